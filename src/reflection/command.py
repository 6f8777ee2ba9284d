"""
Command Reflection Provider - runs an external extractor.

Runs a configured executable with the assembly path as its last argument
and reads the manifest document (JSON) it prints to stdout. Any tool that
can load .NET metadata and emit the manifest shape can be plugged in.
"""

import asyncio
import json
import logging
import os
import shlex
from typing import Any, Dict, List, Union

from errors import ReflectionFault
from models import ReflectedType
from reflection.base import ReflectionProvider, check_assembly_file
from reflection.manifest import parse_manifest

logger = logging.getLogger(__name__)


class CommandReflectionProvider(ReflectionProvider):
    """Reflection provider that shells out to an extractor tool."""

    def __init__(self):
        self.command: List[str] = []
        self.timeout: int = 120

    @property
    def name(self) -> str:
        return "command"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load extractor configuration from environment variables."""
        return {
            "command": os.getenv("XRM_REFLECTION_COMMAND", ""),
            "timeout": int(os.getenv("XRM_REFLECTION_TIMEOUT", "120")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        command: Union[str, List[str]] = config.get("command") or self.command
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.timeout = config.get("timeout", self.timeout)

        if not self.command:
            logger.warning(
                "Reflection command not configured. Set XRM_REFLECTION_COMMAND."
            )

    async def extract_plugin_types(self, assembly_path: str) -> List[ReflectedType]:
        if not self.command:
            raise ReflectionFault(
                "No reflection command configured", assembly_path=assembly_path
            )
        check_assembly_file(assembly_path)

        args = [*self.command, assembly_path]
        logger.debug(f"Running reflection command: {' '.join(args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ReflectionFault(
                f"Cannot start reflection command {self.command[0]}: {e}",
                assembly_path=assembly_path,
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ReflectionFault(
                f"Reflection command timed out after {self.timeout}s",
                assembly_path=assembly_path,
            ) from e

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise ReflectionFault(
                f"Reflection command exited with {process.returncode}: {detail}",
                assembly_path=assembly_path,
            )

        try:
            data = json.loads(stdout.decode("utf-8"))
        except ValueError as e:
            raise ReflectionFault(
                f"Reflection command produced invalid JSON: {e}",
                assembly_path=assembly_path,
            ) from e

        return parse_manifest(data, assembly_path)
