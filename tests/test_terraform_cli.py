import subprocess
from unittest.mock import patch

import pytest

from lampstack.exceptions import TerraformCommandError
from lampstack.terraform_cli import CommandBuilder, TerraformCLI


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def cli(tmp_path):
    return TerraformCLI(tmp_path, env={"AWS_PROFILE": "ops"})


def test_build_plan_command():
    command = CommandBuilder.build_plan_command("tfplan", destroy=True)
    assert command[0] == "plan"
    assert "-destroy" in command
    assert "-lock=true" in command
    assert command[-1] == "-out=tfplan"


def test_build_apply_command_applies_saved_plan():
    command = CommandBuilder.build_apply_command("tfplan")
    assert command[0] == "apply"
    assert "-auto-approve" in command
    assert command[-1] == "tfplan"


@patch("lampstack.terraform_cli.subprocess.run")
def test_runs_in_workdir_with_env(run, cli, tmp_path):
    run.return_value = completed()
    cli.init()

    args, kwargs = run.call_args
    assert args[0][:2] == ["terraform", "init"]
    assert kwargs["cwd"] == tmp_path
    assert kwargs["env"]["AWS_PROFILE"] == "ops"
    assert kwargs["env"]["TF_IN_AUTOMATION"] == "1"


@patch("lampstack.terraform_cli.subprocess.run")
def test_plan_reports_changes_from_detailed_exit_code(run, cli):
    run.return_value = completed(returncode=2)
    assert cli.plan("tfplan") is True

    run.return_value = completed(returncode=0)
    assert cli.plan("tfplan") is False


@patch("lampstack.terraform_cli.subprocess.run")
def test_failure_carries_stderr_verbatim(run, cli):
    run.return_value = completed(returncode=1, stderr="Error: UnauthorizedOperation\n")

    with pytest.raises(TerraformCommandError) as info:
        cli.apply("tfplan")

    assert info.value.stderr == "Error: UnauthorizedOperation\n"
    assert "UnauthorizedOperation" in str(info.value)
    assert info.value.command.startswith("terraform apply")
    assert run.call_count == 1


@patch("lampstack.terraform_cli.subprocess.run")
def test_apply_puts_plan_file_last(run, cli):
    run.return_value = completed()
    cli.apply("tfplan")
    assert run.call_args[0][0][-1] == "tfplan"


@patch("lampstack.terraform_cli.subprocess.run")
def test_output_parses_json(run, cli):
    run.return_value = completed(stdout='{"instances": {"value": {}}}')
    assert cli.output() == {"instances": {"value": {}}}


@patch("lampstack.terraform_cli.subprocess.run", side_effect=FileNotFoundError)
def test_missing_binary(run, cli):
    with pytest.raises(TerraformCommandError, match="not found on PATH"):
        cli.init()


@patch(
    "lampstack.terraform_cli.subprocess.run",
    side_effect=subprocess.TimeoutExpired(cmd="terraform", timeout=1),
)
def test_timeout(run, tmp_path):
    with pytest.raises(TerraformCommandError, match="Timed out"):
        TerraformCLI(tmp_path, timeout=1).destroy()


@patch("lampstack.terraform_cli.subprocess.run")
def test_unreadable_json_is_a_command_error(run, cli):
    run.return_value = completed(stdout="Error: state snapshot was created by a newer version")
    with pytest.raises(TerraformCommandError, match="Unreadable JSON"):
        cli.show_plan("tfplan")
    with pytest.raises(TerraformCommandError, match="Unreadable JSON"):
        cli.output()
