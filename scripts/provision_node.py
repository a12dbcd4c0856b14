#!/usr/bin/env python3
"""
Drive one bare metal node to a provision target.

Usage:
    python scripts/provision_node.py <node-uuid> active --user-data cloud-init.yaml
    python scripts/provision_node.py <node-uuid> clean --clean-steps '[{"interface": "deploy", "step": "erase_devices_metadata"}]'
    python scripts/provision_node.py <node-uuid> deleted

Options:
    --user-data FILE       Cloud-init user data for the config drive
    --network-data FILE    network_data.json for the config drive
    --meta-data FILE       meta_data.json for the config drive
    --deploy-steps JSON    Deploy steps (JSON list)
    --clean-steps JSON     Clean steps (JSON list)
    --service-steps JSON   Service steps (JSON list)
    --rescue-password PW   Password for the rescue ramdisk
    --timeout SECONDS      Override WORKFLOW_TIMEOUT_SECONDS
    --wait-for-api         Wait for the API health check before starting
    --verbose              Enable debug logging

Exit status is 0 when the node reached the target, 1 otherwise.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

load_dotenv()

from config.settings import get_settings
from core.errors import ProvisioningError
from core.ironic_client import IronicClient
from core.logging_config import configure_logging
from core.provisioning import (
    ProvisioningPayload,
    TransitionAction,
    build_config_drive,
    run_provisioning_workflow,
)
from core.provisioning.payload import parse_steps
from core.provisioning.planner import SUPPORTED_TARGETS

logger = logging.getLogger("scripts.provision_node")


def _read_json(path: Optional[str]):
    if not path:
        return None
    return json.loads(Path(path).read_text())


def build_payload(args: argparse.Namespace, microversion: str) -> ProvisioningPayload:
    """Assemble the request payload from CLI arguments."""
    config_drive = None
    if args.user_data or args.network_data or args.meta_data:
        config_drive = build_config_drive(
            microversion,
            user_data=Path(args.user_data).read_text() if args.user_data else None,
            network_data=_read_json(args.network_data),
            meta_data=_read_json(args.meta_data),
        )

    return ProvisioningPayload(
        config_drive=config_drive,
        deploy_steps=parse_steps(args.deploy_steps),
        clean_steps=parse_steps(args.clean_steps),
        service_steps=parse_steps(args.service_steps),
        rescue_password=args.rescue_password,
    )


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Drive a bare metal node to a provision target")
    parser.add_argument("node", help="Node UUID or name")
    parser.add_argument(
        "target",
        choices=sorted(t.value for t in SUPPORTED_TARGETS),
        help="Provision target to reach",
    )
    parser.add_argument("--user-data", help="Cloud-init user data file")
    parser.add_argument("--network-data", help="network_data.json file")
    parser.add_argument("--meta-data", help="meta_data.json file")
    parser.add_argument("--deploy-steps", help="Deploy steps as a JSON list")
    parser.add_argument("--clean-steps", help="Clean steps as a JSON list")
    parser.add_argument("--service-steps", help="Service steps as a JSON list")
    parser.add_argument("--rescue-password", help="Rescue ramdisk password")
    parser.add_argument("--timeout", type=int, help="Workflow deadline in seconds")
    parser.add_argument("--wait-for-api", action="store_true", help="Wait for a healthy API first")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    try:
        settings = get_settings()
    except ValueError as e:
        configure_logging(log_level="DEBUG" if args.verbose else "INFO", log_format="text", log_file="")
        logger.error(f"Invalid configuration: {e}")
        return 1

    configure_logging(
        log_level="DEBUG" if args.verbose else settings.log_level,
        log_format="text",
        log_file=settings.log_file,
    )

    workflow_settings = settings.workflow
    if args.timeout:
        workflow_settings = workflow_settings.model_copy(update={"timeout_seconds": args.timeout})

    try:
        with IronicClient() as client:
            if args.wait_for_api:
                client.wait_for_api(
                    timeout=settings.ironic.api_wait_timeout,
                    interval=settings.ironic.api_wait_interval,
                )
            payload = build_payload(args, client.microversion)
            node = run_provisioning_workflow(
                client,
                args.node,
                TransitionAction(args.target),
                payload=payload,
                settings=workflow_settings,
            )
    except (ProvisioningError, ValueError, OSError) as e:
        logger.error(f"Provisioning {args.node} to '{args.target}' failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted, node left in its current state")
        return 1

    logger.info(f"Node {node.uuid or args.node} is '{node.provision_state}'")
    return 0


if __name__ == "__main__":
    sys.exit(main())
