"""Tests for the stackcraft command line."""
import argparse
import json

import pytest
import yaml

from mcp_infra_reconciler.cli import main, parse_vars
from mcp_infra_reconciler.state_store import FileStateStore


STACK = {
    "variables": {"cidr": {"default": "10.0.0.0/16"}},
    "resources": {
        "aws_vpc": {"main": {"cidr_block": "${var.cidr}"}},
        "aws_subnet": {"public": {"vpc_id": "${aws_vpc.main.id}", "cidr_block": "10.0.1.0/24"}},
    },
}


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """A home directory, a memory provider and a declaration file."""
    monkeypatch.setenv("STACKCRAFT_STATE_GIT", "0")
    monkeypatch.setenv("STACKCRAFT_LOG_FILE", str(tmp_path / "logs" / "stackcraft.log"))
    monkeypatch.setenv("STACKCRAFT_BACKOFF_MIN", "0")
    (tmp_path / "providers.yaml").write_text(
        yaml.safe_dump({"providers": {"aws": {"type": "memory"}}})
    )
    (tmp_path / "stack.yaml").write_text(yaml.safe_dump(STACK))
    return tmp_path


def run(workdir, *args: str) -> int:
    return main([
        "--home", str(workdir / "home"),
        "--providers", str(workdir / "providers.yaml"),
        *args,
    ])


class TestCli:
    """Tests for CLI commands and exit codes."""

    def test_plan(self, workdir, capsys):
        code = run(workdir, "plan", "-f", str(workdir / "stack.yaml"))

        out = capsys.readouterr().out
        assert code == 0
        assert "[+] aws_vpc.main" in out
        assert "[+] aws_subnet.public" in out

    def test_apply_then_no_changes(self, workdir, capsys):
        assert run(workdir, "apply", "-f", str(workdir / "stack.yaml")) == 0
        capsys.readouterr()

        assert run(workdir, "plan", "-f", str(workdir / "stack.yaml")) == 0
        assert "No changes" in capsys.readouterr().out

    def test_apply_json(self, workdir, capsys):
        code = run(workdir, "--json", "apply", "-f", str(workdir / "stack.yaml"),
                   "--var", "cidr=10.9.0.0/16")

        data = json.loads(capsys.readouterr().out)
        assert code == 0
        assert data["success"] is True
        assert data["plan"]["counts"]["create"] == 2

        store = FileStateStore(workdir / "home" / "state", git_enabled=False)
        with store.acquire_lock(timeout=1) as lock:
            record = store.read_all(lock)["aws_vpc.main"]
        assert record.inputs["cidr_block"] == "10.9.0.0/16"

    def test_state_list_and_show(self, workdir, capsys):
        run(workdir, "apply", "-f", str(workdir / "stack.yaml"))
        capsys.readouterr()

        assert run(workdir, "--json", "state", "list") == 0
        assert json.loads(capsys.readouterr().out) == ["aws_subnet.public", "aws_vpc.main"]

        assert run(workdir, "state", "show", "aws_vpc.main") == 0
        assert json.loads(capsys.readouterr().out)["address"] == "aws_vpc.main"

        assert run(workdir, "state", "show", "aws_vpc.other") == 1

    def test_destroy(self, workdir, capsys):
        """Destroy empties state even when the provider lost the resources."""
        run(workdir, "apply", "-f", str(workdir / "stack.yaml"))

        assert run(workdir, "destroy") == 0
        capsys.readouterr()

        run(workdir, "--json", "state", "list")
        assert json.loads(capsys.readouterr().out) == []

    def test_fatal_exit_code(self, workdir, capsys):
        """A cycle is a fatal error with exit code 2."""
        (workdir / "cycle.yaml").write_text(yaml.safe_dump({
            "resources": {
                "aws_security_group": {
                    "a": {"peer": "${aws_security_group.b.id}"},
                    "b": {"peer": "${aws_security_group.a.id}"},
                }
            }
        }))

        assert run(workdir, "apply", "-f", str(workdir / "cycle.yaml")) == 2
        assert "DependencyCycleError" in capsys.readouterr().err

    def test_plan_requires_file(self, workdir, capsys):
        assert run(workdir, "plan") == 2

    def test_force_unlock(self, workdir, capsys):
        store = FileStateStore(workdir / "home" / "state", git_enabled=False)
        lock = store.acquire_lock(timeout=1, holder="crashed")

        assert run(workdir, "force-unlock", lock.lock_id) == 0
        assert "removed" in capsys.readouterr().out
        assert store.lock_info() is None

    def test_missing_providers(self, workdir, capsys):
        code = main([
            "--home", str(workdir / "home"),
            "--providers", str(workdir / "nope.yaml"),
            "plan", "-f", str(workdir / "stack.yaml"),
        ])
        assert code == 2


class TestParseVars:
    """Tests for --var parsing."""

    def test_pairs(self):
        assert parse_vars(["a=1", "b=x=y"]) == {"a": "1", "b": "x=y"}

    def test_empty(self):
        assert parse_vars(None) == {}

    def test_invalid(self):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_vars(["novalue"])
