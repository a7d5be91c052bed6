"""Unit tests for the terraform CLI executor."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from tfinstance.infrastructure.terraform.executor import (
    IMPORT_PLACEHOLDER_FILE,
    parse_envs,
    TerraformCliExecutor,
    TerraformExecutionError,
)


class FakeProcess:
    def __init__(self, returncode: int, output: str) -> None:
        self.returncode = returncode
        self._output = output

    async def communicate(self) -> tuple[bytes, None]:
        return self._output.encode(), None


class ScriptedTerraform:
    """Stands in for ``asyncio.create_subprocess_exec`` running terraform."""

    def __init__(self, work_dir: Path) -> None:
        self.work_dir = work_dir
        self.calls: list[dict[str, Any]] = []
        self.outputs: dict[str, str] = {}
        self.failures: set[str] = set()
        self.placeholder_seen = False

    async def __call__(self, binary: str, *args: str, **kwargs: Any) -> FakeProcess:
        self.calls.append({"binary": binary, "args": list(args), **kwargs})
        command = args[0]
        if command == "init":
            (self.work_dir / ".terraform").mkdir(exist_ok=True)
        if command == "import":
            self.placeholder_seen = (self.work_dir / IMPORT_PLACEHOLDER_FILE).exists()
        if command in self.failures:
            return FakeProcess(1, f"Error: {command} failed")
        return FakeProcess(0, self.outputs.get(command, ""))

    def commands(self) -> list[list[str]]:
        return [call["args"] for call in self.calls]


@pytest.fixture
def scripted(tf_dir: Path, monkeypatch: pytest.MonkeyPatch) -> ScriptedTerraform:
    fake = ScriptedTerraform(tf_dir)
    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake)
    return fake


@pytest.fixture
def executor(tf_dir: Path) -> TerraformCliExecutor:
    return TerraformCliExecutor(str(tf_dir), envs=["TF_LOG=DEBUG", "AWS_REGION=us-west-2"])


class TestParseEnvs:
    def test_parse(self) -> None:
        assert parse_envs(["A=1", "B=x=y"]) == {"A": "1", "B": "x=y"}

    def test_none(self) -> None:
        assert parse_envs(None) == {}

    def test_missing_equals(self) -> None:
        with pytest.raises(ValueError):
            parse_envs(["NOPE"])


class TestTerraformCliExecutor:
    @pytest.mark.asyncio
    async def test_apply_runs_init_once(
        self, executor: TerraformCliExecutor, scripted: ScriptedTerraform
    ) -> None:
        await executor.apply()
        await executor.apply()
        assert scripted.commands() == [
            ["init", "-input=false"],
            ["apply", "-refresh=false", "-input=false", "-auto-approve"],
            ["apply", "-refresh=false", "-input=false", "-auto-approve"],
        ]

    @pytest.mark.asyncio
    async def test_apply_without_auto_approve(
        self, tf_dir: Path, scripted: ScriptedTerraform
    ) -> None:
        executor = TerraformCliExecutor(str(tf_dir), auto_approve=False)
        await executor.apply()
        assert scripted.commands()[-1] == ["apply", "-refresh=false", "-input=false"]

    @pytest.mark.asyncio
    async def test_environment_and_working_dir(
        self,
        executor: TerraformCliExecutor,
        scripted: ScriptedTerraform,
        tf_dir: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("TFINSTANCE_INHERITED", "yes")
        await executor.refresh()
        call = scripted.calls[0]
        assert call["binary"] == "terraform"
        assert call["cwd"] == str(tf_dir)
        assert call["env"]["TF_LOG"] == "DEBUG"
        assert call["env"]["AWS_REGION"] == "us-west-2"
        assert call["env"]["TFINSTANCE_INHERITED"] == "yes"

    @pytest.mark.asyncio
    async def test_failure_raises(
        self, executor: TerraformCliExecutor, scripted: ScriptedTerraform
    ) -> None:
        scripted.failures.add("refresh")
        with pytest.raises(TerraformExecutionError, match="refresh failed"):
            await executor.refresh()

    @pytest.mark.asyncio
    async def test_missing_binary_raises(self, tf_dir: Path) -> None:
        executor = TerraformCliExecutor(str(tf_dir), binary="terraform-does-not-exist-xyz")
        assert executor.is_installed() is False
        with pytest.raises(TerraformExecutionError):
            await executor.refresh()

    @pytest.mark.asyncio
    async def test_version(self, executor: TerraformCliExecutor, scripted: ScriptedTerraform) -> None:
        scripted.outputs["version"] = "Terraform v0.11.14\n+ provider.aws v1.60.0\n"
        assert await executor.version() == (0, 11, 14)

    @pytest.mark.asyncio
    async def test_show_resources_decodes(
        self, executor: TerraformCliExecutor, scripted: ScriptedTerraform
    ) -> None:
        scripted.outputs["show"] = "aws_instance.instance-1:\n  id = i-1\n  ami = ami-1\n"
        result = await executor.show_resources(["aws_instance"], ["id"])
        assert scripted.commands() == [["show", "-no-color"]]
        assert result["aws_instance"]["instance-1"]["id"].to_python() == "i-1"
        assert "ami" not in result["aws_instance"]["instance-1"]

    @pytest.mark.asyncio
    async def test_state_show(self, executor: TerraformCliExecutor, scripted: ScriptedTerraform) -> None:
        scripted.outputs["state"] = "id = i-1\ntags.% = 1\ntags.Name = instance-1\n"
        result = await executor.state_show("aws_instance.instance-1")
        assert scripted.commands() == [["state", "show", "aws_instance.instance-1", "-no-color"]]
        assert result["tags"].to_python() == {"Name": "instance-1"}

    @pytest.mark.asyncio
    async def test_state_list(self, executor: TerraformCliExecutor, scripted: ScriptedTerraform) -> None:
        scripted.outputs["state"] = (
            "aws_instance.instance-1\naws_instance.instance-2\naws_eip.instance-1-ip\n\nbogus\n"
        )
        assert await executor.state_list() == {
            "aws_instance": {"instance-1", "instance-2"},
            "aws_eip": {"instance-1-ip"},
        }

    @pytest.mark.asyncio
    async def test_import_uses_placeholder(
        self, executor: TerraformCliExecutor, scripted: ScriptedTerraform, tf_dir: Path
    ) -> None:
        await executor.import_resource("aws_instance", "instance-1", "i-123")
        assert ["import", "-input=false", "aws_instance.instance-1", "i-123"] in scripted.commands()
        assert scripted.placeholder_seen
        assert not (tf_dir / IMPORT_PLACEHOLDER_FILE).exists()

    @pytest.mark.asyncio
    async def test_import_failure_removes_placeholder(
        self, executor: TerraformCliExecutor, scripted: ScriptedTerraform, tf_dir: Path
    ) -> None:
        scripted.failures.add("import")
        with pytest.raises(TerraformExecutionError):
            await executor.import_resource("aws_instance", "instance-1", "i-123")
        assert not (tf_dir / IMPORT_PLACEHOLDER_FILE).exists()

    @pytest.mark.asyncio
    async def test_state_rm(self, executor: TerraformCliExecutor, scripted: ScriptedTerraform) -> None:
        await executor.state_rm("aws_instance", "instance-1")
        assert scripted.commands() == [["state", "rm", "aws_instance.instance-1"]]
