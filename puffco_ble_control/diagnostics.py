# puffco_ble_control/diagnostics.py
"""Structured connectivity report for a session.

Handed to the ``diagnostics_sink`` after connect and after polling starts,
and printed by ``puffcoctl info``.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover
    from .device.base_device import PuffcoDevice


def describe_services(services: Any) -> list[dict[str, Any]]:
    if not services:
        return []
    out: list[dict[str, Any]] = []
    for service in services:
        out.append(
            {
                "uuid": str(service.uuid),
                "characteristics": len(getattr(service, "characteristics", []) or []),
            }
        )
    return out


def build_diagnostics(device: "PuffcoDevice") -> dict[str, Any]:
    client = device.client
    caps = device.capabilities
    payload: dict[str, Any] = {
        "name": device.name,
        "address": device.address,
        "connected": device.is_connected,
        "mode": device.mode.value if device.mode is not None else None,
        "services": describe_services(getattr(client, "services", None)),
        "limits": None,
        "identity": {},
        "profiles": {},
        "watched_paths": device.paths.watched_paths if device.paths is not None else [],
    }
    if caps is None:
        return payload

    payload["pup"] = caps.pup
    payload["limits"] = asdict(caps.limits) if caps.is_lorax else None
    payload["identity"] = {
        "model": caps.model,
        "hardware_version": caps.hardware_version,
        "firmware": caps.firmware,
        "git_hash": caps.git_hash,
        "mac": caps.mac,
        "serial": caps.serial,
        **caps.details,
    }
    payload["profiles"] = {str(idx): p.to_dict() for idx, p in sorted(caps.profiles.items())}
    return payload


__all__ = ["build_diagnostics", "describe_services"]
