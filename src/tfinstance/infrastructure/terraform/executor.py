"""Terraform executor implementation."""

from __future__ import annotations

import asyncio
import json
import os
import re
import shutil

import structlog

from tfinstance.domain.models.values import FlatValue
from tfinstance.domain.ports.services import ShowResult, TerraformExecutionError, TerraformExecutor
from tfinstance.infrastructure.terraform.flatmap import FlatMapDecoder


logger = structlog.get_logger(__name__)

VERSION_REGEX = re.compile(r"^Terraform v([0-9]+)\.([0-9]+)\.([0-9]+)")

IMPORT_PLACEHOLDER_FILE = "import-resource.tf.json"


def parse_envs(envs: list[str] | None) -> dict[str, str]:
    """Convert ``KEY=VALUE`` strings to a mapping."""
    result: dict[str, str] = {}
    for entry in envs or []:
        if "=" not in entry:
            raise ValueError(f"Env var is missing '=' character: {entry}")
        key, value = entry.split("=", 1)
        result[key] = value
    return result


class TerraformCliExecutor(TerraformExecutor):
    """Runs the terraform binary inside the resource directory.

    Every command inherits the process environment plus the configured
    extra variables. A non-zero exit raises :class:`TerraformExecutionError`.
    """

    def __init__(
        self,
        working_dir: str,
        envs: list[str] | None = None,
        auto_approve: bool = True,
        binary: str = "terraform",
        decoder: FlatMapDecoder | None = None,
    ) -> None:
        self._working_dir = working_dir
        self._envs = parse_envs(envs)
        self._auto_approve = auto_approve
        self._binary = binary
        self._decoder = decoder or FlatMapDecoder()
        self._init_lock = asyncio.Lock()
        self._init_completed = False

    @property
    def working_dir(self) -> str:
        return self._working_dir

    def is_installed(self) -> bool:
        return shutil.which(self._binary) is not None

    async def version(self) -> tuple[int, int, int]:
        """Return the installed terraform version."""
        output = await self._check("version", ["version"])
        for line in output.splitlines():
            match = VERSION_REGEX.match(line.strip())
            if match:
                major, minor, patch = (int(part) for part in match.groups())
                logger.info("terraform_version", version=f"{major}.{minor}.{patch}")
                return major, minor, patch
        raise TerraformExecutionError(f"Unable to determine terraform version: {output}")

    async def init(self) -> None:
        """Run terraform init once per executor.

        Init only counts as done once the ``.terraform`` directory exists;
        with no configuration files there is nothing to initialize yet.
        """
        if self._init_completed:
            return
        async with self._init_lock:
            if self._init_completed:
                return
            await self._check("init", ["init", "-input=false"])
            if os.path.isdir(os.path.join(self._working_dir, ".terraform")):
                self._init_completed = True
            else:
                logger.warning("terraform_init_incomplete", working_dir=self._working_dir)

    async def apply(self) -> str:
        await self.init()
        args = ["apply", "-refresh=false", "-input=false"]
        if self._auto_approve:
            args.append("-auto-approve")
        logger.info("terraform_apply", working_dir=self._working_dir)
        return await self._check("apply", args, log_output=True)

    async def refresh(self) -> str:
        logger.info("terraform_refresh", working_dir=self._working_dir)
        return await self._check("refresh", ["refresh", "-input=false"], log_output=True)

    async def show_resources(
        self,
        resource_types: list[str] | None = None,
        property_filter: list[str] | None = None,
    ) -> ShowResult:
        output = await self._check("show", ["show", "-no-color"])
        return self._decoder.decode_show(output, resource_types, property_filter)

    async def state_show(self, address: str) -> dict[str, FlatValue]:
        output = await self._check("state show", ["state", "show", address, "-no-color"])
        return self._decoder.decode_state_show(output)

    async def state_list(self) -> dict[str, set[str]]:
        output = await self._check("state list", ["state", "list", "-no-color"])
        result: dict[str, set[str]] = {}
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            # Every line should be <resource-type>.<resource-name>
            if "." not in line:
                logger.error("terraform_state_list_invalid_line", line=line)
                continue
            resource_type, resource_name = line.split(".", 1)
            result.setdefault(resource_type, set()).add(resource_name)
        return result

    async def import_resource(
        self, resource_type: str, resource_name: str, resource_id: str
    ) -> None:
        # terraform only imports into an address declared in configuration;
        # a property-less placeholder is enough and is removed afterwards.
        placeholder = os.path.join(self._working_dir, IMPORT_PLACEHOLDER_FILE)
        with open(placeholder, "w") as f:
            json.dump({"resource": {resource_type: {resource_name: {}}}}, f, indent=2)
        try:
            await self.init()
            logger.info(
                "terraform_import",
                resource_type=resource_type,
                resource_name=resource_name,
                resource_id=resource_id,
            )
            await self._check(
                "import",
                ["import", "-input=false", f"{resource_type}.{resource_name}", resource_id],
                log_output=True,
            )
        finally:
            try:
                os.remove(placeholder)
            except FileNotFoundError:
                pass

    async def state_rm(self, resource_type: str, resource_name: str) -> None:
        logger.info("terraform_state_rm", resource_type=resource_type, resource_name=resource_name)
        await self._check("state rm", ["state", "rm", f"{resource_type}.{resource_name}"])

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _run(self, args: list[str], log_output: bool = False) -> tuple[bool, str]:
        """Run terraform with ``args``, returning (success, combined output)."""
        env = {**os.environ, **self._envs}
        try:
            process = await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                cwd=self._working_dir,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return False, f"Failed to execute {self._binary}: {e}"

        stdout, _ = await process.communicate()
        output = stdout.decode("utf-8", errors="replace")
        if log_output:
            for line in output.splitlines():
                if line.strip():
                    logger.info("terraform_output", command=args[0], line=line)
        return process.returncode == 0, output

    async def _check(self, name: str, args: list[str], log_output: bool = False) -> str:
        """Run a terraform command and raise on failure."""
        success, output = await self._run(args, log_output=log_output)
        if not success:
            logger.error("terraform_command_failed", command=name, output=output[-2000:])
            raise TerraformExecutionError(f"terraform {name} failed: {output}")
        return output
