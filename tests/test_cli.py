import pytest

from conftest import INSTANCE_ID, SECURITY_GROUP_ID, SNAPSHOT_ID, SUBNET_ID, FakeGateway
from jenkins_ebs_backup import deploy_cli, recover_cli
from jenkins_ebs_backup.deployment import DeploymentOrchestrator
from jenkins_ebs_backup.errors import NotFoundError


@pytest.fixture
def answers(monkeypatch):
    """Scripted replies for input(); tests append to the list before calling main."""
    replies = []

    def fake_input(prompt=""):
        if not replies:
            raise AssertionError(f"unexpected prompt: {prompt}")
        return replies.pop(0)

    monkeypatch.setattr("builtins.input", fake_input)
    return replies


def use_gateway(monkeypatch, module, gateway):
    monkeypatch.setattr(module, "build_gateway", lambda region: gateway)


def recover_args(tmp_path, *extra):
    return [
        SNAPSHOT_ID,
        "--region", "us-east-1",
        "--key-name", "jenkins-key",
        "--security-group", SECURITY_GROUP_ID,
        "--subnet-id", SUBNET_ID,
        "--logs-dir", str(tmp_path / "logs"),
        *extra,
    ]


def test_recover_dry_run_creates_nothing(monkeypatch, tmp_path, gateway, answers):
    use_gateway(monkeypatch, recover_cli, gateway)

    assert recover_cli.main(recover_args(tmp_path, "--dry-run")) == 0

    assert gateway.mutating_calls == []
    assert gateway.called("describe_snapshot")
    assert list((tmp_path / "logs").glob("recovery-*.log"))


def test_recover_runs_after_confirmation(monkeypatch, tmp_path, gateway, answers, capsys):
    use_gateway(monkeypatch, recover_cli, gateway)
    answers.append("y")

    assert recover_cli.main(recover_args(tmp_path)) == 0

    assert gateway.called("attach_volume")
    out = capsys.readouterr().out
    assert "Recovery instance ready!" in out
    assert "ssh -i ~/.ssh/jenkins-key.pem ec2-user@54.10.20.30" in out


def test_recover_cancelled_at_confirmation(monkeypatch, tmp_path, gateway, answers):
    use_gateway(monkeypatch, recover_cli, gateway)
    answers.append("n")

    assert recover_cli.main(recover_args(tmp_path)) == 0
    assert gateway.mutating_calls == []


def test_recover_needs_snapshot_and_network_settings(monkeypatch, tmp_path, gateway):
    use_gateway(monkeypatch, recover_cli, gateway)

    assert recover_cli.main(["--logs-dir", str(tmp_path)]) == 1
    assert recover_cli.main([SNAPSHOT_ID, "--key-name", "k", "--logs-dir", str(tmp_path)]) == 1
    assert gateway.mutating_calls == []


def test_recover_rejects_malformed_security_group(monkeypatch, tmp_path, gateway, capsys):
    use_gateway(monkeypatch, recover_cli, gateway)
    args = recover_args(tmp_path, "--dry-run")
    args[args.index(SECURITY_GROUP_ID)] = "sg-bogus"

    assert recover_cli.main(args) == 1
    assert not gateway.called("describe_snapshot")
    assert "security group ID" in capsys.readouterr().err


def test_recover_failure_prints_remediation(monkeypatch, tmp_path, answers, capsys):
    gateway = FakeGateway(snapshot_state="pending")
    use_gateway(monkeypatch, recover_cli, gateway)
    answers.append("y")

    assert recover_cli.main(recover_args(tmp_path)) == 1

    captured = capsys.readouterr()
    assert "Validating failed" in captured.err
    assert "describe-snapshots" in captured.out


def test_recover_interrupt_lists_created_resources(monkeypatch, tmp_path, answers, capsys):
    gateway = FakeGateway(failures={"wait_instance_running": KeyboardInterrupt()})
    use_gateway(monkeypatch, recover_cli, gateway)
    answers.append("y")

    assert recover_cli.main(recover_args(tmp_path)) == 1

    captured = capsys.readouterr()
    assert "interrupted during InstanceRunning" in captured.err
    assert "terminate-instances --instance-ids i-0fedcba9876543210" in captured.out
    assert "delete-volume --volume-id vol-0fedcba9876543210" in captured.out


def test_recover_list_snapshots(monkeypatch, tmp_path, gateway, capsys):
    use_gateway(monkeypatch, recover_cli, gateway)

    assert recover_cli.main(["--list", "--logs-dir", str(tmp_path)]) == 0
    assert SNAPSHOT_ID in capsys.readouterr().out


def test_recover_interactive_selects_snapshot(monkeypatch, tmp_path, gateway, answers):
    use_gateway(monkeypatch, recover_cli, gateway)
    # selection, key pair, security group, subnet, instance type (default)
    answers.extend(["1", "jenkins-key", SECURITY_GROUP_ID, SUBNET_ID, ""])

    assert recover_cli.main(["--interactive", "--dry-run", "--logs-dir", str(tmp_path)]) == 0

    _, args = next(call for call in gateway.calls if call[0] == "describe_snapshot")
    assert args == (SNAPSHOT_ID,)
    assert gateway.mutating_calls == []


@pytest.fixture
def deploy_files(tmp_path):
    template = tmp_path / "jenkins-snapshot-backup.yaml"
    template.write_text("AWSTemplateFormatVersion: '2010-09-09'\nResources: {}\n", encoding="utf-8")
    conf = tmp_path / "jenkins-backup.conf"
    conf.write_text(
        f"JENKINS_INSTANCE_ID={INSTANCE_ID}\nRETENTION_DAYS=14\nBACKUP_TIME=03:00\nSTACK_NAME=jenkins-backup-test\n",
        encoding="utf-8",
    )
    return template, conf


def deploy_args(tmp_path, deploy_files, *extra):
    template, conf = deploy_files
    return [
        "--config", str(conf),
        "--region", "us-east-1",
        "--template-file", str(template),
        "--logs-dir", str(tmp_path / "logs"),
        *extra,
    ]


def use_orchestrator(monkeypatch):
    monkeypatch.setattr(deploy_cli, "build_orchestrator",
                        lambda gateway: DeploymentOrchestrator(gateway, sleep=lambda _: None))


def test_deploy_dry_run_from_config_file(monkeypatch, tmp_path, gateway, deploy_files, answers):
    use_gateway(monkeypatch, deploy_cli, gateway)

    assert deploy_cli.main(deploy_args(tmp_path, deploy_files, "--dry-run")) == 0

    assert gateway.called("validate_template")
    assert not gateway.called("deploy_stack")
    assert list((tmp_path / "logs").glob("deployment-*.log"))


def test_config_file_long_retention_prints_cost_warning(monkeypatch, tmp_path, gateway, deploy_files, capsys):
    use_gateway(monkeypatch, deploy_cli, gateway)
    _, conf = deploy_files
    conf.write_text(f"JENKINS_INSTANCE_ID={INSTANCE_ID}\nRETENTION_DAYS=90\n", encoding="utf-8")

    assert deploy_cli.main(deploy_args(tmp_path, deploy_files, "--dry-run")) == 0

    out = capsys.readouterr().out
    assert "Long retention periods increase storage costs" in out
    assert "~$13.50/month" in out


def test_unknown_config_key_reported_once(monkeypatch, tmp_path, gateway, deploy_files, capsys):
    use_gateway(monkeypatch, deploy_cli, gateway)
    _, conf = deploy_files
    conf.write_text(f"JENKINS_INSTANCE_ID={INSTANCE_ID}\nSLACK_WEBHOOK=https://hooks.example.com/x\n",
                    encoding="utf-8")

    assert deploy_cli.main(deploy_args(tmp_path, deploy_files, "--dry-run")) == 0

    captured = capsys.readouterr()
    assert (captured.out + captured.err).count("Unknown configuration option: SLACK_WEBHOOK") == 1


def test_deploy_success_verifies_stack(monkeypatch, tmp_path, gateway, deploy_files, answers, capsys):
    use_gateway(monkeypatch, deploy_cli, gateway)
    use_orchestrator(monkeypatch)
    answers.extend(["y", "n"])  # deploy, skip the backup test

    assert deploy_cli.main(deploy_args(tmp_path, deploy_files)) == 0

    _, (stack_name, parameters) = next(call for call in gateway.calls if call[0] == "deploy_stack")
    assert stack_name == "jenkins-backup-test"
    assert {"ParameterKey": "RetentionDays", "ParameterValue": "14"} in parameters
    assert "Lambda function verified: jenkins-snapshot-backup-fn" in capsys.readouterr().out
    assert not gateway.called("invoke_function")


def test_deploy_rollback_exits_nonzero(monkeypatch, tmp_path, deploy_files, answers, capsys):
    gateway = FakeGateway(stack_statuses=["ROLLBACK_COMPLETE"])
    use_gateway(monkeypatch, deploy_cli, gateway)
    use_orchestrator(monkeypatch)
    answers.append("y")

    assert deploy_cli.main(deploy_args(tmp_path, deploy_files)) == 1
    assert "ROLLBACK_COMPLETE" in capsys.readouterr().err


def test_deploy_missing_template_fails_prerequisites(monkeypatch, tmp_path, gateway, deploy_files):
    use_gateway(monkeypatch, deploy_cli, gateway)
    args = deploy_args(tmp_path, deploy_files, "--dry-run")
    args[args.index("--template-file") + 1] = str(tmp_path / "missing.yaml")

    assert deploy_cli.main(args) == 1
    assert not gateway.called("deploy_stack")


def test_deploy_missing_config_file(monkeypatch, tmp_path, gateway):
    use_gateway(monkeypatch, deploy_cli, gateway)
    assert deploy_cli.main(["--config", str(tmp_path / "nope.conf"), "--logs-dir", str(tmp_path)]) == 1
    assert gateway.calls == []


def test_cleanup_dry_run_deletes_nothing(monkeypatch, tmp_path, gateway):
    use_gateway(monkeypatch, deploy_cli, gateway)

    assert deploy_cli.main(["--cleanup", "--dry-run", "--region", "us-east-1", "--logs-dir", str(tmp_path)]) == 0
    assert not gateway.called("delete_stack")


def test_cleanup_deletes_stack_after_confirmation(monkeypatch, tmp_path, answers):
    gateway = FakeGateway(stack_statuses=["CREATE_COMPLETE", NotFoundError("gone", code="ValidationError")])
    use_gateway(monkeypatch, deploy_cli, gateway)
    use_orchestrator(monkeypatch)
    answers.append("yes")

    assert deploy_cli.main(["--cleanup", "--region", "us-east-1", "--logs-dir", str(tmp_path)]) == 0
    assert gateway.called("delete_stack")
