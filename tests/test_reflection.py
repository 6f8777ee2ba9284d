"""Unit tests for the reflection package - manifest, command and registry."""

import json
import os
import sys
from unittest.mock import patch

import pytest
import yaml

from errors import ReflectionFault
from models import DeclaredState, ImageType, StepMode, StepStage
from reflection.base import check_assembly_file
from reflection.command import CommandReflectionProvider
from reflection.manifest import (
    ManifestReflectionProvider,
    find_manifest,
    parse_manifest,
)
from reflection.registry import (
    ReflectionProviderRegistry,
    get_registry,
    register_builtin_providers,
)


class TestCheckAssemblyFile:
    """Tests for check_assembly_file."""

    def test_valid_file(self, assembly_file):
        check_assembly_file(str(assembly_file))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ReflectionFault, match="not found"):
            check_assembly_file(str(tmp_path / "missing.dll"))

    def test_not_a_pe_file(self, tmp_path):
        path = tmp_path / "notes.dll"
        path.write_text("hello")
        with pytest.raises(ReflectionFault, match="not a valid managed assembly"):
            check_assembly_file(str(path))


class TestParseManifest:
    """Tests for parse_manifest."""

    def test_parses_types_steps_and_images(self, sample_manifest):
        types = parse_manifest(sample_manifest, "test")

        assert [t.full_type_name for t in types] == [
            "Contoso.Plugins.PreCreate",
            "Contoso.Plugins.PostUpdate",
        ]
        pre_create, post_update = types

        step = pre_create.steps[0]
        assert step.stage is StepStage.PRE_OPERATION
        assert step.primary_entity == "account"
        assert step.mode is None
        assert step.images[0].image_type is ImageType.PRE_IMAGE
        assert step.images[0].attributes == ["name", "accountnumber"]

        assert post_update.friendly_name == "Post Update"
        assert post_update.steps[0].stage is StepStage.POST_OPERATION
        assert post_update.steps[0].mode is StepMode.ASYNCHRONOUS
        assert post_update.steps[0].filtering_attributes == ["firstname", "lastname"]

    def test_accepts_bare_list(self):
        types = parse_manifest([{"name": "Contoso.A"}], "test")
        assert types[0].full_type_name == "Contoso.A"
        assert types[0].steps == []

    def test_absent_state(self):
        types = parse_manifest(
            [
                {
                    "name": "Contoso.A",
                    "steps": [
                        {
                            "message": "Delete",
                            "state": "absent",
                            "images": [{"name": "Pre", "state": "absent"}],
                        }
                    ],
                }
            ],
            "test",
        )
        step = types[0].steps[0]
        assert step.state is DeclaredState.ABSENT
        assert step.images[0].state is DeclaredState.ABSENT

    @pytest.mark.parametrize(
        "document",
        [
            {"types": []},
            [{"name": ""}],
            [{"name": "A", "steps": [{"message": "Create", "stage": "sometime"}]}],
            [{"name": "A", "steps": [{"message": "Create", "mode": "later"}]}],
            [{"name": "A", "unexpected": True}],
            "not a manifest",
        ],
    )
    def test_invalid_documents(self, document):
        with pytest.raises(ReflectionFault):
            parse_manifest(document, "test")


class TestFindManifest:
    """Tests for find_manifest."""

    def test_finds_sidecar(self, assembly_file):
        manifest = assembly_file.with_name("Contoso.Plugins.plugins.yaml")
        manifest.write_text("types: []")
        assert find_manifest(str(assembly_file)) == str(manifest)

    def test_no_sidecar(self, assembly_file):
        assert find_manifest(str(assembly_file)) is None


@pytest.mark.asyncio
class TestManifestReflectionProvider:
    """Tests for ManifestReflectionProvider."""

    async def test_reads_yaml_sidecar(self, assembly_file, sample_manifest):
        assembly_file.with_name("Contoso.Plugins.plugins.yaml").write_text(
            yaml.safe_dump(sample_manifest)
        )
        provider = ManifestReflectionProvider()
        await provider.initialize({})

        types = await provider.extract_plugin_types(str(assembly_file))

        assert len(types) == 2

    async def test_configured_json_path(self, assembly_file, tmp_path, sample_manifest):
        manifest = tmp_path / "elsewhere.json"
        manifest.write_text(json.dumps(sample_manifest))
        provider = ManifestReflectionProvider()
        await provider.initialize({"manifest_path": str(manifest)})

        types = await provider.extract_plugin_types(str(assembly_file))

        assert types[1].full_type_name == "Contoso.Plugins.PostUpdate"

    async def test_missing_manifest(self, assembly_file):
        provider = ManifestReflectionProvider()
        await provider.initialize({})

        with pytest.raises(ReflectionFault, match="No plugin manifest found"):
            await provider.extract_plugin_types(str(assembly_file))

    async def test_assembly_check_can_be_disabled(self, tmp_path, sample_manifest):
        manifest = tmp_path / "m.json"
        manifest.write_text(json.dumps(sample_manifest))
        provider = ManifestReflectionProvider()
        await provider.initialize(
            {"manifest_path": str(manifest), "verify_assembly": False}
        )

        types = await provider.extract_plugin_types(str(tmp_path / "missing.dll"))

        assert len(types) == 2

    def test_load_config_from_env(self):
        with patch.dict(
            os.environ,
            {"XRM_PLUGIN_MANIFEST": "/tmp/m.yaml", "XRM_VERIFY_ASSEMBLY": "false"},
        ):
            config = ManifestReflectionProvider.load_config_from_env()
        assert config == {"manifest_path": "/tmp/m.yaml", "verify_assembly": False}


def write_extractor(tmp_path, body):
    script = tmp_path / "extractor.py"
    script.write_text(body)
    return [sys.executable, str(script)]


@pytest.mark.asyncio
class TestCommandReflectionProvider:
    """Tests for CommandReflectionProvider."""

    async def test_reads_stdout(self, tmp_path, assembly_file, sample_manifest):
        command = write_extractor(
            tmp_path, f"import json\nprint(json.dumps({sample_manifest!r}))\n"
        )
        provider = CommandReflectionProvider()
        await provider.initialize({"command": command})

        types = await provider.extract_plugin_types(str(assembly_file))

        assert [t.full_type_name for t in types] == [
            "Contoso.Plugins.PreCreate",
            "Contoso.Plugins.PostUpdate",
        ]

    async def test_non_zero_exit(self, tmp_path, assembly_file):
        command = write_extractor(
            tmp_path, "import sys\nsys.stderr.write('bad image')\nsys.exit(3)\n"
        )
        provider = CommandReflectionProvider()
        await provider.initialize({"command": command})

        with pytest.raises(ReflectionFault, match="exited with 3: bad image"):
            await provider.extract_plugin_types(str(assembly_file))

    async def test_invalid_json(self, tmp_path, assembly_file):
        command = write_extractor(tmp_path, "print('not json')\n")
        provider = CommandReflectionProvider()
        await provider.initialize({"command": command})

        with pytest.raises(ReflectionFault, match="invalid JSON"):
            await provider.extract_plugin_types(str(assembly_file))

    async def test_missing_executable(self, tmp_path, assembly_file):
        provider = CommandReflectionProvider()
        await provider.initialize({"command": str(tmp_path / "no-such-tool")})

        with pytest.raises(ReflectionFault, match="Cannot start reflection command"):
            await provider.extract_plugin_types(str(assembly_file))

    async def test_not_configured(self, assembly_file):
        provider = CommandReflectionProvider()
        await provider.initialize({"command": ""})

        with pytest.raises(ReflectionFault, match="No reflection command configured"):
            await provider.extract_plugin_types(str(assembly_file))


class TestReflectionProviderRegistry:
    """Tests for ReflectionProviderRegistry."""

    def test_register_and_list(self):
        registry = ReflectionProviderRegistry()
        registry.register_provider(ManifestReflectionProvider)

        assert registry.list_providers() == ["manifest"]
        assert registry.has_provider("manifest")
        assert registry.get_provider_info("manifest") == {
            "name": "manifest",
            "version": "1.0.0",
        }
        assert registry.get_provider_info("nope") is None

    def test_builtin_providers(self):
        with patch("reflection.registry.entry_points", return_value=[]):
            register_builtin_providers()

        assert sorted(get_registry().list_providers()) == ["command", "manifest"]

    def test_broken_entry_point_is_skipped(self):
        class BrokenEntryPoint:
            name = "broken"

            def load(self):
                raise ImportError("missing module")

        with patch("reflection.registry.entry_points", return_value=[BrokenEntryPoint()]):
            register_builtin_providers()

        assert not get_registry().has_provider("broken")

    @pytest.mark.asyncio
    async def test_get_provider_merges_config(self):
        registry = ReflectionProviderRegistry()
        with patch.dict(os.environ, {"XRM_REFLECTION_TIMEOUT": "30"}):
            registry.register_provider(CommandReflectionProvider)

        provider = await registry.get_provider("command", {"command": "extract --json"})

        assert provider.command == ["extract", "--json"]
        assert provider.timeout == 30
        assert await registry.get_provider("command") is provider

    @pytest.mark.asyncio
    async def test_unknown_provider(self):
        registry = ReflectionProviderRegistry()

        with pytest.raises(ValueError, match="Unknown reflection provider: cecil"):
            await registry.get_provider("cecil")
