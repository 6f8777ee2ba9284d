"""Unit tests for registration_client.py - plugin registration entity sets."""

import pytest

from registration_client import (
    ASSEMBLIES,
    IMAGES,
    MESSAGE_FILTERS,
    PLUGIN_TYPES,
    STEP_EXPAND,
    STEPS,
    RegistrationClient,
)


@pytest.mark.asyncio
class TestRegistrationClient:
    """Tests for RegistrationClient request shapes."""

    async def test_create_type_requests_representation(self, mock_client):
        mock_client.post.return_value = {"plugintypeid": "abc"}
        client = RegistrationClient(mock_client)

        result = await client.create_type({"typename": "A"})

        assert result == {"plugintypeid": "abc"}
        mock_client.post.assert_awaited_once_with(
            PLUGIN_TYPES, {"typename": "A"}, return_representation=True
        )

    async def test_list_types_filters_by_assembly(self, mock_client):
        client = RegistrationClient(mock_client)

        await client.list_types_for_assembly("abc")

        kwargs = mock_client.get_value.call_args.kwargs
        assert mock_client.get_value.call_args.args == (PLUGIN_TYPES,)
        assert kwargs["filter_expr"] == "_pluginassemblyid_value eq abc"

    async def test_list_steps_expands_message_and_filter(self, mock_client):
        client = RegistrationClient(mock_client)

        await client.list_steps_for_type("t1")

        kwargs = mock_client.get_value.call_args.kwargs
        assert mock_client.get_value.call_args.args == (STEPS,)
        assert kwargs["filter_expr"] == "_eventhandler_value eq t1"
        assert kwargs["expand"] == STEP_EXPAND

    async def test_find_assembly_escapes_name(self, mock_client):
        mock_client.get_value.return_value = [{"pluginassemblyid": "a", "name": "O'Neil"}]
        client = RegistrationClient(mock_client)

        row = await client.find_assembly_by_name("O'Neil")

        assert row["pluginassemblyid"] == "a"
        assert mock_client.get_value.call_args.kwargs["filter_expr"] == "name eq 'O''Neil'"

    async def test_find_returns_none_without_rows(self, mock_client):
        client = RegistrationClient(mock_client)
        assert await client.find_image_by_name("s1", "Pre") is None
        assert await client.find_sdk_message("Create") is None

    async def test_find_message_filter(self, mock_client):
        client = RegistrationClient(mock_client)

        await client.find_sdk_message_filter("m1", "account")

        assert mock_client.get_value.call_args.args == (MESSAGE_FILTERS,)
        assert mock_client.get_value.call_args.kwargs["filter_expr"] == (
            "_sdkmessageid_value eq m1 and primaryobjecttypecode eq 'account'"
        )

    async def test_update_and_delete_paths(self, mock_client):
        client = RegistrationClient(mock_client)

        await client.update_assembly_content("a1", "TVo=")
        await client.update_image("i1", {"attributes": "name"})
        await client.delete_step("s1")

        mock_client.patch.assert_any_await(f"{ASSEMBLIES}(a1)", {"content": "TVo="})
        mock_client.patch.assert_any_await(f"{IMAGES}(i1)", {"attributes": "name"})
        mock_client.delete.assert_awaited_once_with(f"{STEPS}(s1)")
