"""
Tests for the provision_node command line entry point.

The Ironic client and workflow are mocked; only argument handling and
exit codes are exercised.
"""

import json
import os
from unittest.mock import MagicMock, patch

import pytest

from core.errors import NoValidTransitionError
from core.ironic_client import Node
from core.provisioning.payload import Step, StructuredConfigDrive
from core.provisioning.states import ProvisionState, TransitionAction
from scripts import provision_node


@pytest.fixture
def mock_client():
    client = MagicMock()
    client.microversion = "1.81"
    client.__enter__.return_value = client
    client.__exit__.return_value = False
    with patch.object(provision_node, "IronicClient", return_value=client):
        yield client


@pytest.fixture(autouse=True)
def _no_logging_setup():
    with patch.object(provision_node, "configure_logging"):
        yield


class TestProvisionNode:
    def test_success(self, mock_client):
        with patch.object(
            provision_node,
            "run_provisioning_workflow",
            return_value=Node(uuid="node-1", provision_state=ProvisionState.ACTIVE),
        ) as mock_run:
            assert provision_node.main(["node-1", "active"]) == 0

        args, kwargs = mock_run.call_args
        assert args == (mock_client, "node-1", TransitionAction.ACTIVE)
        assert kwargs["payload"].config_drive is None

    def test_failure_exit_code(self, mock_client):
        with patch.object(
            provision_node,
            "run_provisioning_workflow",
            side_effect=NoValidTransitionError("No recovery", node_id="node-1", state="error"),
        ):
            assert provision_node.main(["node-1", "inspect"]) == 1

    def test_unknown_target_rejected(self, mock_client):
        with pytest.raises(SystemExit):
            provision_node.main(["node-1", "abort"])

    def test_timeout_override(self, mock_client):
        with patch.object(provision_node, "run_provisioning_workflow") as mock_run:
            provision_node.main(["node-1", "deleted", "--timeout", "600"])

        assert mock_run.call_args.kwargs["settings"].timeout_seconds == 600

    def test_wait_for_api(self, mock_client):
        with patch.object(provision_node, "run_provisioning_workflow"):
            provision_node.main(["node-1", "manage", "--wait-for-api"])

        mock_client.wait_for_api.assert_called_once()

    def test_missing_ironic_url_exit_code(self, mock_client, tmp_path, monkeypatch):
        """Invalid configuration is reported and exits 1 without contacting Ironic."""
        monkeypatch.chdir(tmp_path)  # no .env to fall back on
        env = {k: v for k, v in os.environ.items() if not k.startswith("IRONIC_")}
        env.pop("TESTING", None)

        with patch.dict(os.environ, env, clear=True), \
                patch.object(provision_node, "run_provisioning_workflow") as mock_run:
            assert provision_node.main(["node-1", "active"]) == 1

        provision_node.IronicClient.assert_not_called()
        mock_run.assert_not_called()

    def test_malformed_steps_exit_code(self, mock_client):
        with patch.object(provision_node, "run_provisioning_workflow") as mock_run:
            code = provision_node.main(["node-1", "clean", "--clean-steps", '["erase"]'])

        assert code == 1
        mock_run.assert_not_called()


class TestBuildPayload:
    def _args(self, *argv):
        parsed = {}

        def _capture(client, node, target, payload=None, settings=None):
            parsed["payload"] = payload
            return Node(uuid=node, provision_state=ProvisionState.ACTIVE)

        client = MagicMock()
        client.microversion = "1.81"
        client.__enter__.return_value = client
        client.__exit__.return_value = False
        with patch.object(provision_node, "IronicClient", return_value=client), \
                patch.object(provision_node, "run_provisioning_workflow", side_effect=_capture):
            provision_node.main(["node-1", *argv])
        return parsed["payload"]

    def test_steps_from_json(self):
        payload = self._args(
            "clean", "--clean-steps", '[{"interface": "deploy", "step": "erase_devices_metadata"}]'
        )
        assert payload.clean_steps == (Step("deploy", "erase_devices_metadata"),)

    def test_config_drive_from_files(self, tmp_path):
        user_data = tmp_path / "user-data"
        user_data.write_text("#cloud-config\n")
        meta_data = tmp_path / "meta_data.json"
        meta_data.write_text(json.dumps({"hostname": "node-1"}))

        payload = self._args(
            "active", "--user-data", str(user_data), "--meta-data", str(meta_data)
        )

        assert payload.config_drive == StructuredConfigDrive(
            user_data="#cloud-config\n", meta_data={"hostname": "node-1"}
        )

    def test_rescue_password(self):
        payload = self._args("rescue", "--rescue-password", "hunter2")
        assert payload.rescue_password == "hunter2"

    def test_missing_user_data_file(self, mock_client, tmp_path):
        with patch.object(provision_node, "run_provisioning_workflow") as mock_run:
            code = provision_node.main(
                ["node-1", "active", "--user-data", str(tmp_path / "missing")]
            )

        assert code == 1
        mock_run.assert_not_called()
