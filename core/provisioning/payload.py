"""
Provisioning request payloads.

Deploy/clean/service steps, the config drive, and the per-action request
body sent to PUT /v1/nodes/{uuid}/states/provision.

The config drive is one of two variants, decided once by the API
microversion:
- StructuredConfigDrive (>= 1.56): the service builds the ISO itself
- ConfigDriveBlob (< 1.56): we build a gzipped, base64-encoded ISO

Usage:
    from core.provisioning.payload import ProvisioningPayload, Step, build_config_drive

    drive = build_config_drive("1.81", user_data="#cloud-config\\n...")
    payload = ProvisioningPayload(
        config_drive=drive,
        deploy_steps=(Step("deploy", "write_image", priority=80),),
    )
    body = build_request_body(TransitionAction.ACTIVE, payload)
"""

import base64
import gzip
import json
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from core.errors import ConfigDriveError
from core.provisioning.states import TransitionAction

logger = logging.getLogger(__name__)

# First microversion that accepts a JSON config drive
STRUCTURED_CONFIG_DRIVE_VERSION = (1, 56)

CONFIG_DRIVE_LABEL = "config-2"


@dataclass(frozen=True)
class Step:
    """
    One deploy, clean or service step.

    Attributes:
        interface: Driver interface (deploy, bios, raid, management, ...)
        step: Step name on that interface
        priority: Execution priority; None omits it (manual clean steps)
        args: Step arguments
    """

    interface: str
    step: str
    priority: Optional[int] = None
    args: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "interface": self.interface,
            "step": self.step,
            "args": dict(self.args),
        }
        if self.priority is not None:
            data["priority"] = self.priority
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Step":
        """Build from the API's JSON shape."""
        if not isinstance(data, Mapping):
            raise ValueError(f"Step must be a JSON object, got {type(data).__name__}")
        if not isinstance(data.get("args") or {}, Mapping):
            raise ValueError("Step args must be a JSON object")
        try:
            return cls(
                interface=data["interface"],
                step=data["step"],
                priority=data.get("priority"),
                args=dict(data.get("args") or {}),
            )
        except KeyError as e:
            raise ValueError(f"Step is missing required key {e}")


def parse_steps(raw: Union[str, Sequence[Mapping[str, Any]], None]) -> Tuple[Step, ...]:
    """
    Parse steps from a JSON string or a list of dicts.

    Returns:
        Tuple of Steps (empty for None or empty input)
    """
    if raw is None:
        return ()
    if isinstance(raw, str):
        if not raw.strip():
            return ()
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Steps are not valid JSON: {e}")
    if not isinstance(raw, list):
        raise ValueError("Steps must be a JSON list")
    return tuple(Step.from_dict(item) for item in raw)


@dataclass(frozen=True)
class ConfigDriveBlob:
    """Pre-built config drive: gzipped ISO, base64 encoded."""

    data: str

    def to_api(self) -> str:
        return self.data


@dataclass(frozen=True)
class StructuredConfigDrive:
    """Config drive contents the service renders into an ISO itself."""

    user_data: Union[str, Dict[str, Any], None] = None
    network_data: Optional[Dict[str, Any]] = None
    meta_data: Optional[Dict[str, Any]] = None

    def to_api(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.user_data is not None:
            data["user_data"] = self.user_data
        if self.network_data is not None:
            data["network_data"] = self.network_data
        if self.meta_data is not None:
            data["meta_data"] = self.meta_data
        return data


ConfigDrive = Union[ConfigDriveBlob, StructuredConfigDrive]


@dataclass(frozen=True)
class ProvisioningPayload:
    """Optional data attached to the transitions that accept it."""

    config_drive: Optional[ConfigDrive] = None
    deploy_steps: Tuple[Step, ...] = ()
    clean_steps: Tuple[Step, ...] = ()
    service_steps: Tuple[Step, ...] = ()
    rescue_password: Optional[str] = None


def parse_microversion(version: str) -> Tuple[int, int]:
    """
    Parse an API microversion like "1.56".

    Raises:
        ConfigDriveError: not in MAJOR.MINOR form
    """
    try:
        major, minor = version.strip().split(".")
        return int(major), int(minor)
    except (AttributeError, ValueError):
        raise ConfigDriveError(f"Invalid API microversion '{version}'")


def normalize_network_data(network_data: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Decode JSON-encoded string values in network data.

    Values given as strings starting with '[' or '{' are parsed; other
    values pass through untouched.
    """
    result: Dict[str, Any] = {}
    for key, value in network_data.items():
        if isinstance(value, str) and value[:1] in ("[", "{"):
            try:
                result[key] = json.loads(value)
            except json.JSONDecodeError as e:
                raise ConfigDriveError(
                    f"Error unmarshalling network data for key {key}: {e}"
                )
        else:
            result[key] = value
    return result


def build_config_drive(
    microversion: str,
    user_data: Union[str, Dict[str, Any], None] = None,
    network_data: Optional[Mapping[str, Any]] = None,
    meta_data: Optional[Dict[str, Any]] = None,
) -> ConfigDrive:
    """
    Build the config drive variant the target API accepts.

    Args:
        microversion: Negotiated API microversion
        user_data: Cloud-init user data; a dict with a single "value" key is
            unwrapped to that string
        network_data: network_data.json contents
        meta_data: meta_data.json contents

    Returns:
        StructuredConfigDrive for >= 1.56, otherwise a ConfigDriveBlob

    Raises:
        ConfigDriveError: user data shape not supported by the API version,
            or ISO creation failed
    """
    if isinstance(user_data, dict) and len(user_data) == 1 and "value" in user_data:
        if not isinstance(user_data["value"], str):
            raise ConfigDriveError(
                "user_data must be a string when only one key is present, "
                f"got {type(user_data['value']).__name__}"
            )
        user_data = user_data["value"]

    normalized = normalize_network_data(network_data) if network_data is not None else None

    if parse_microversion(microversion) >= STRUCTURED_CONFIG_DRIVE_VERSION:
        return StructuredConfigDrive(
            user_data=user_data,
            network_data=normalized,
            meta_data=meta_data,
        )

    if user_data is not None and not isinstance(user_data, str):
        raise ConfigDriveError(
            f"user_data must be a string for API versions < 1.56, got {type(user_data).__name__}"
        )

    logger.debug(f"API version {microversion} predates structured config drives, building ISO")
    return ConfigDriveBlob(
        data=_build_iso_blob(user_data, normalized, meta_data)
    )


def _build_iso_blob(
    user_data: Optional[str],
    network_data: Optional[Dict[str, Any]],
    meta_data: Optional[Dict[str, Any]],
) -> str:
    """Render an OpenStack config drive ISO with genisoimage; return gzip+base64."""
    with tempfile.TemporaryDirectory(prefix="configdrive-") as workdir:
        latest = os.path.join(workdir, "root", "openstack", "latest")
        os.makedirs(latest)

        with open(os.path.join(latest, "meta_data.json"), "w") as f:
            json.dump(meta_data or {}, f)
        if user_data is not None:
            with open(os.path.join(latest, "user_data"), "w") as f:
                f.write(user_data)
        if network_data is not None:
            with open(os.path.join(latest, "network_data.json"), "w") as f:
                json.dump(network_data, f)

        iso_path = os.path.join(workdir, "configdrive.iso")
        cmd = [
            "genisoimage",
            "-o", iso_path,
            "-ldots", "-allow-lowercase", "-allow-multidot", "-l",
            "-quiet", "-J", "-r",
            "-V", CONFIG_DRIVE_LABEL,
            os.path.join(workdir, "root"),
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
        except FileNotFoundError:
            raise ConfigDriveError("genisoimage not found; install it or use API >= 1.56")
        except subprocess.TimeoutExpired:
            raise ConfigDriveError("genisoimage timed out")

        if result.returncode != 0:
            raise ConfigDriveError(f"genisoimage failed: {result.stderr.strip()}")

        with open(iso_path, "rb") as f:
            iso = f.read()

    return base64.b64encode(gzip.compress(iso)).decode("ascii")


def build_request_body(
    action: TransitionAction,
    payload: Optional[ProvisioningPayload] = None,
) -> Dict[str, Any]:
    """
    Request body for a provision state change.

    Payload is only attached where the API accepts it:
    - active: config drive and deploy steps
    - clean: clean steps (empty list if none)
    - service: service steps
    - rescue: rescue password
    """
    payload = payload or ProvisioningPayload()
    body: Dict[str, Any] = {"target": action.value}

    if action == TransitionAction.ACTIVE:
        if payload.config_drive is not None:
            body["configdrive"] = payload.config_drive.to_api()
        if payload.deploy_steps:
            body["deploy_steps"] = _steps(payload.deploy_steps)
    elif action == TransitionAction.CLEAN:
        body["clean_steps"] = _steps(payload.clean_steps)
    elif action == TransitionAction.SERVICE:
        body["service_steps"] = _steps(payload.service_steps)
    elif action == TransitionAction.RESCUE:
        if payload.rescue_password is not None:
            body["rescue_password"] = payload.rescue_password

    return body


def _steps(steps: Sequence[Step]) -> List[Dict[str, Any]]:
    return [step.to_dict() for step in steps]
