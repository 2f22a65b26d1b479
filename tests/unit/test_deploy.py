"""Tests for the state deployer and image tag selection."""
from __future__ import annotations

import io
import logging
import stat
from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from piboot.deploy import StateDeployer, deploy_many, match_tag, select_image_tag
from piboot.envfile import read_env
from piboot.errors import ConfigurationError, FilesystemError, SourceMissingError
from piboot.models import ServiceDescriptor
from piboot.storage import ServiceStore


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


class TestStateDeployer:
    """Materializing the live tree from the source tree."""

    def test_first_deploy_creates_tree(self, store: ServiceStore, source_tree: Path):
        descriptor = store.descriptor("wireguard")
        result = StateDeployer(store).deploy(descriptor)

        assert descriptor.compose_dir.is_dir()
        assert descriptor.data_path.is_dir()
        assert descriptor.compose_path.read_bytes() == (source_tree / "wireguard" / "compose.yml").read_bytes()
        assert descriptor.env_path.read_bytes() == (source_tree / "wireguard" / ".env").read_bytes()
        assert _mode(descriptor.compose_path) == 0o644
        assert _mode(descriptor.env_path) == 0o600
        assert len(result.changes) == 4

    def test_redeploy_is_idempotent(self, store: ServiceStore, deployed: ServiceDescriptor):
        """Identical content is not rewritten, so watchers see no change."""
        inode = deployed.compose_path.stat().st_ino
        result = StateDeployer(store).deploy(deployed)
        assert result.changes == []
        assert deployed.compose_path.stat().st_ino == inode

    def test_redeploy_restores_env_mode(self, store: ServiceStore, deployed: ServiceDescriptor):
        deployed.env_path.chmod(0o644)
        StateDeployer(store).deploy(deployed)
        assert _mode(deployed.env_path) == 0o600

    def test_changed_source_overwrites(self, store: ServiceStore, deployed: ServiceDescriptor, source_tree: Path):
        (source_tree / "wireguard" / "compose.yml").write_text("services: {}\n")
        result = StateDeployer(store).deploy(deployed)
        assert deployed.compose_path.read_text() == "services: {}\n"
        assert result.changes == [f"wrote {deployed.compose_path}"]

    def test_env_optional(self, store: ServiceStore, source_tree: Path, caplog):
        descriptor = store.descriptor("pihole")
        with caplog.at_level(logging.WARNING, logger="piboot.deploy"):
            StateDeployer(store).deploy(descriptor)
        assert any("No source .env" in record.getMessage() for record in caplog.records)
        assert descriptor.compose_path.is_file()
        assert not descriptor.env_path.exists()

    def test_missing_source_creates_nothing(self, store: ServiceStore, source_tree: Path):
        descriptor = store.descriptor("nextcloud")
        with pytest.raises(SourceMissingError):
            StateDeployer(store).deploy(descriptor)
        assert not descriptor.compose_dir.exists()
        assert not descriptor.data_path.exists()

    def test_missing_source_is_configuration_error(self, store: ServiceStore, source_tree: Path):
        with pytest.raises(ConfigurationError):
            StateDeployer(store).deploy(store.descriptor("nextcloud"))

    def test_directory_failure(self, store: ServiceStore, source_tree: Path):
        store.compose_root.parent.mkdir(parents=True, exist_ok=True)
        store.compose_root.write_text("not a directory")
        with pytest.raises(FilesystemError):
            StateDeployer(store).deploy(store.descriptor("wireguard"))


class TestDeployMany:
    def test_continues_after_failure(self, store: ServiceStore, source_tree: Path):
        failed = deploy_many(StateDeployer(store), store, ["nextcloud", "wireguard", "bad name"])
        assert failed == ["nextcloud", "bad name"]
        assert store.descriptor("wireguard").is_deployed()


class TestMatchTag:
    """Prefix matching against the declared options."""

    def test_empty_answer_is_default(self):
        assert match_tag("", ["latest", "edge"]) == "latest"

    def test_prefix(self):
        assert match_tag("e", ["latest", "edge"]) == "edge"

    def test_case_insensitive(self):
        assert match_tag("ED", ["latest", "edge"]) == "edge"

    def test_first_match_wins(self):
        assert match_tag("l", ["latest", "lts"]) == "latest"

    def test_no_match(self):
        assert match_tag("beta", ["latest", "edge"]) is None


class TestSelectImageTag:
    def test_prompt_prefix_answer(self, deployed: ServiceDescriptor):
        tag = select_image_tag(
            deployed, ["latest", "edge"], interactive=True, input_fn=lambda prompt, timeout: "e"
        )
        assert tag == "edge"
        assert read_env(deployed.env_path)["IMAGE_TAG"] == "edge"
        assert deployed.env_path.read_text().count("IMAGE_TAG=") == 1

    def test_prompt_empty_answer(self, deployed: ServiceDescriptor):
        tag = select_image_tag(
            deployed, ["latest", "edge"], interactive=True, input_fn=lambda prompt, timeout: ""
        )
        assert tag == "latest"

    def test_invalid_answer_reprompts(self, deployed: ServiceDescriptor):
        answers = iter(["beta", "  Ed  "])
        prompts = []
        output = io.StringIO()

        def answer(prompt, timeout):
            prompts.append(prompt)
            return next(answers)

        tag = select_image_tag(
            deployed, ["latest", "edge"], interactive=True, input_fn=answer, output=output
        )
        assert tag == "edge"
        assert len(prompts) == 2
        assert "Invalid choice 'beta'" in output.getvalue()

    def test_timeout_passed_to_reader(self, deployed: ServiceDescriptor):
        seen = []
        select_image_tag(
            deployed,
            ["latest", "edge"],
            interactive=True,
            timeout=30,
            input_fn=lambda prompt, timeout: seen.append(timeout) or "",
        )
        assert seen == [30]

    def test_unattended_takes_default(self, deployed: ServiceDescriptor):
        def fail(prompt, timeout):
            raise AssertionError("should not prompt")

        tag = select_image_tag(deployed, ["edge", "latest"], interactive=False, input_fn=fail)
        assert tag == "edge"
        assert read_env(deployed.env_path)["IMAGE_TAG"] == "edge"
        assert read_env(deployed.env_path)["PUID"] == "1000"

    def test_custom_key(self, deployed: ServiceDescriptor):
        select_image_tag(deployed, ["2.1"], interactive=False, key="WG_TAG")
        values = read_env(deployed.env_path)
        assert values["WG_TAG"] == "2.1"
        assert values["IMAGE_TAG"] == "latest"

    def test_no_options(self, deployed: ServiceDescriptor):
        with pytest.raises(ConfigurationError):
            select_image_tag(deployed, [], interactive=False)
