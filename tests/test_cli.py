"""Tests for the graphctl command line."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner, Result
from provider_mock import MockProvider

from graphctl.cli import EXIT_CHANGES, EXIT_ERROR, EXIT_LOCKED, EXIT_OK, cli
from graphctl.config import Config
from graphctl.providers.registry import PROVIDER_FACTORIES
from graphctl.state import StateStore

DOCUMENT: dict[str, Any] = {
    "context": {"project": "shop", "environment": "dev"},
    "variables": {"image": "nginx:1"},
    "resources": [
        {"type": "Test/groups", "name": "core"},
        {
            "type": "Test/sites",
            "name": "web",
            "attributes": {"group": "${Test/groups::core.id}", "image": "${var.image}"},
        },
    ],
    "outputs": {
        "endpoint": "${Test/sites::web.endpoint}",
        "group_id": {"value": "${Test/groups::core.id}", "sensitive": True},
    },
}


@pytest.fixture(autouse=True)
def environment(
    config: Config,
    provider: MockProvider,
    write_document: Callable[[dict[str, Any]], Path],
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[None]:
    """Point the CLI at a temporary document and the mock provider."""
    write_document(DOCUMENT)
    monkeypatch.setenv("CONFIG_PATH", str(config.config_path))
    monkeypatch.setenv("STATE_PATH", str(config.state_path))
    monkeypatch.setenv("PROVIDER", "mock")
    monkeypatch.setenv("RETRY_BACKOFF_BASE", "0")
    monkeypatch.setenv("RETRY_BACKOFF_MAX", "0")
    monkeypatch.setenv("LOG_FORMAT", "text")
    monkeypatch.setenv("LOG_LEVEL", "CRITICAL")
    monkeypatch.delenv("AZURE_SUBSCRIPTION_ID", raising=False)
    monkeypatch.setitem(PROVIDER_FACTORIES, "mock", lambda cfg: provider)
    root_logger = logging.getLogger()
    level = root_logger.level
    yield
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        if handler.get_name() == "graphctl":
            root_logger.removeHandler(handler)


def run(*args: str, input: str | None = None) -> Result:
    return CliRunner().invoke(cli, list(args), input=input)


class TestPlan:
    """Tests for graphctl plan."""

    def test_plan(self) -> None:
        result = run("plan")

        assert result.exit_code == EXIT_OK, result.output
        assert "+ Test/groups::core" in result.output
        assert "Plan: 2 to create, 0 to update, 0 to replace, 0 to delete" in result.output

    def test_detailed_exitcode(self) -> None:
        assert run("plan", "--detailed-exitcode").exit_code == EXIT_CHANGES

        run("apply", "--auto-approve")
        result = run("plan", "--detailed-exitcode")

        assert result.exit_code == EXIT_OK
        assert "No changes." in result.output

    def test_invalid_var(self) -> None:
        result = run("plan", "--var", "image")
        assert result.exit_code == 2
        assert "name=value" in result.output

    def test_undeclared_var(self) -> None:
        result = run("plan", "--var", "colour=blue")
        assert result.exit_code == EXIT_ERROR
        assert "Undeclared variables" in result.output

    def test_invalid_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PARALLELISM", "0")

        result = run("plan")

        assert result.exit_code == EXIT_ERROR
        assert "PARALLELISM must be between" in result.output

    def test_locked_state(self, config: Config) -> None:
        other = StateStore(config.state_path)
        other.acquire("apply")
        try:
            result = run("plan")
        finally:
            other.release()

        assert result.exit_code == EXIT_LOCKED
        assert "State is locked" in result.output


class TestApply:
    """Tests for graphctl apply."""

    def test_auto_approve(self, provider: MockProvider) -> None:
        result = run("apply", "--auto-approve")

        assert result.exit_code == EXIT_OK, result.output
        assert "Apply complete: 2 applied, 0 unchanged" in result.output
        assert "endpoint = https://shop-dev-web.example.net" in result.output
        assert "group_id = (sensitive)" in result.output
        assert len(provider.objects) == 2

    def test_confirmation_declined(self, provider: MockProvider) -> None:
        result = run("apply", input="n\n")

        assert result.exit_code == EXIT_OK
        assert "Apply these changes?" in result.output
        assert "Apply cancelled." in result.output
        assert provider.objects == {}

    def test_confirmation_accepted(self, provider: MockProvider) -> None:
        result = run("apply", input="y\n")

        assert result.exit_code == EXIT_OK, result.output
        assert len(provider.objects) == 2

    def test_var_override(self, provider: MockProvider) -> None:
        result = run("apply", "--auto-approve", "--var", "image=nginx:2")

        assert result.exit_code == EXIT_OK, result.output
        assert provider.find("Test/sites", "shop-dev-web").attributes["image"] == "nginx:2"  # type: ignore[union-attr]

    def test_saved_plan(self, tmp_path: Path, provider: MockProvider) -> None:
        plan_file = tmp_path / "plan.json"
        assert run("plan", "--out", str(plan_file)).exit_code == EXIT_OK

        result = run("apply", str(plan_file))

        assert result.exit_code == EXIT_OK, result.output
        assert len(provider.objects) == 2

    def test_stale_saved_plan(self, tmp_path: Path) -> None:
        plan_file = tmp_path / "plan.json"
        run("plan", "--out", str(plan_file))
        run("apply", "--auto-approve")

        result = run("apply", str(plan_file))

        assert result.exit_code == EXIT_ERROR
        assert "Saved plan is stale" in result.output

    def test_saved_plan_rejects_vars(self, tmp_path: Path) -> None:
        plan_file = tmp_path / "plan.json"
        run("plan", "--out", str(plan_file))

        result = run("apply", str(plan_file), "--var", "image=x")

        assert result.exit_code == 2

    def test_failed_action(self, provider: MockProvider) -> None:
        provider.fail("create", "shop-dev-core")

        result = run("apply", "--auto-approve")

        assert result.exit_code == EXIT_ERROR
        assert "! Test/groups::core: injected create failure" in result.output
        assert "- Test/sites::web: skipped, a dependency failed" in result.output
        assert "1 failed, 1 skipped" in result.output

    def test_drift_blocks_apply(self, provider: MockProvider) -> None:
        run("apply", "--auto-approve")
        provider.drift("Test/sites", "shop-dev-web", image="hand-edited")

        planned = run("plan")
        assert "Drift detected:" in planned.output
        assert "--accept-drift" in planned.output

        result = run("apply", "--auto-approve")
        assert result.exit_code == EXIT_ERROR
        assert "! Test/sites::web was modified outside of graphctl (image)" in result.output

        accepted = run("apply", "--auto-approve", "--accept-drift")
        assert accepted.exit_code == EXIT_OK, accepted.output


class TestDestroy:
    """Tests for graphctl destroy."""

    def test_dry_run(self) -> None:
        run("apply", "--auto-approve")

        result = run("destroy", "--dry-run")

        assert result.exit_code == EXIT_OK
        assert "Destroy order:\n  1. Test/sites::web\n  2. Test/groups::core" in result.output

    def test_first_hint(self) -> None:
        run("apply", "--auto-approve")

        result = run("destroy", "--dry-run", "--first", "Test/groups::core")

        assert "  1. Test/groups::core\n  2. Test/sites::web" in result.output

    def test_destroy(self, provider: MockProvider) -> None:
        run("apply", "--auto-approve")

        result = run("destroy", "--auto-approve")

        assert result.exit_code == EXIT_OK, result.output
        assert "Destroy complete: 2 deleted, 0 failed, 0 skipped, 0 cancelled in 1 round(s)." in (
            result.output
        )
        assert provider.objects == {}

    def test_declined(self, provider: MockProvider) -> None:
        run("apply", "--auto-approve")

        result = run("destroy", input="n\n")

        assert result.exit_code == EXIT_OK
        assert "Destroy cancelled." in result.output
        assert len(provider.objects) == 2

    def test_stuck(self, provider: MockProvider) -> None:
        run("apply", "--auto-approve")
        provider.add_hidden_dependent("shop-dev-core")

        result = run("destroy", "--auto-approve")

        assert result.exit_code == EXIT_ERROR
        assert "Resources still refused deletion:" in result.output
        assert "! Test/groups::core:" in result.output


class TestOutput:
    """Tests for graphctl output."""

    def test_list(self) -> None:
        run("apply", "--auto-approve")

        result = run("output")

        assert result.exit_code == EXIT_OK
        assert result.output.splitlines() == [
            "endpoint = https://shop-dev-web.example.net",
            "group_id = (sensitive)",
        ]

    def test_named_output_shows_sensitive_value(self, provider: MockProvider) -> None:
        run("apply", "--auto-approve")
        core = provider.find("Test/groups", "shop-dev-core")
        assert core is not None

        result = run("output", "group_id")

        assert result.output.strip() == core.remote_id

    def test_json(self) -> None:
        run("apply", "--auto-approve")

        result = run("output", "--json")

        payload = json.loads(result.output)
        assert payload["endpoint"] == {
            "value": "https://shop-dev-web.example.net",
            "sensitive": False,
        }
        assert payload["group_id"]["sensitive"] is True

    def test_unknown_output(self) -> None:
        result = run("output", "missing")

        assert result.exit_code == EXIT_ERROR
        assert "No output named 'missing'" in result.output


class TestStateCommands:
    """Tests for graphctl state and force-unlock."""

    def test_list_show_rm(self, provider: MockProvider) -> None:
        run("apply", "--auto-approve")

        listed = run("state", "list")
        assert listed.output.splitlines() == ["Test/groups::core", "Test/sites::web"]

        shown = run("state", "show", "Test/sites::web")
        assert json.loads(shown.output)["attributes"]["image"] == "nginx:1"

        removed = run("state", "rm", "Test/sites::web")
        assert removed.exit_code == EXIT_OK
        assert "Removed Test/sites::web from state." in removed.output
        assert run("state", "list").output.splitlines() == ["Test/groups::core"]
        # Only forgotten, not deleted remotely
        assert provider.find("Test/sites", "shop-dev-web") is not None

    def test_rm_unknown(self) -> None:
        result = run("state", "rm", "Test/sites::nothing")

        assert result.exit_code == EXIT_ERROR
        assert "No resource recorded at Test/sites::nothing" in result.output

    def test_rm_locked(self, config: Config) -> None:
        other = StateStore(config.state_path)
        other.acquire("apply")
        try:
            result = run("state", "rm", "Test/sites::web")
        finally:
            other.release()

        assert result.exit_code == EXIT_LOCKED

    def test_force_unlock(self, config: Config) -> None:
        assert "State is not locked." in run("force-unlock").output

        StateStore(config.state_path).acquire("apply")
        result = run("force-unlock")

        assert result.exit_code == EXIT_OK
        assert "Removed lock: held by" in result.output
        assert not StateStore(config.state_path).lock_path.exists()
