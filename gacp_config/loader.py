"""
Configuration Loader (``gacp_config.loader``).

Responsibility
--------------
Loads a YAML configuration set and parses it into typed
``gacp_config.schema`` dataclasses.  Build/test tooling: runtime callers
obtain configuration through ``gacp_config.get_active_config()``.

Invariants enforced
-------------------
* No silent defaults for required keys; a missing key raises ``KeyError``.
* Decimal-valued fields are parsed from their string form, never floats.
* ``compute_checksum`` is a deterministic SHA-256 over the raw document.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from gacp_config.schema import (
    AlternativeFlowDef,
    DocumentRulesDef,
    FeeDef,
    HerbDef,
    StateDef,
    ThresholdsDef,
    TransitionDef,
    WorkflowConfigurationSet,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"{field_name}: cannot parse decimal from {value!r}") from e


def _as_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def parse_thresholds(data: dict[str, Any]) -> ThresholdsDef:
    max_rounds = data.get("max_audit_rounds")
    return ThresholdsDef(
        review_pass_score=parse_decimal(data["review_pass_score"], "review_pass_score"),
        audit_pass_score=parse_decimal(data["audit_pass_score"], "audit_pass_score"),
        audit_fail_below=parse_decimal(data["audit_fail_below"], "audit_fail_below"),
        free_rejections=int(data["free_rejections"]),
        max_rejections=int(data["max_rejections"]),
        payment_expiry_days=int(data["payment_expiry_days"]),
        max_audit_rounds=int(max_rounds) if max_rounds is not None else None,
        certificate_validity_years=int(data.get("certificate_validity_years", 3)),
    )


def parse_documents(data: dict[str, Any]) -> DocumentRulesDef:
    return DocumentRulesDef(
        required_types=_as_tuple(data["required_types"]),
        allowed_file_types=tuple(t.lower() for t in _as_tuple(data["allowed_file_types"])),
        max_file_size_bytes=int(data["max_file_size_bytes"]),
    )


def parse_fee(data: dict[str, Any]) -> FeeDef:
    return FeeDef(
        milestone=str(data["milestone"]),
        amount=parse_decimal(data["amount"], f"fees.{data['milestone']}.amount"),
        apply_herb_multiplier=bool(data.get("apply_herb_multiplier", True)),
        description=data.get("description", ""),
    )


def parse_herb(data: dict[str, Any]) -> HerbDef:
    return HerbDef(
        herb_id=str(data["herb_id"]),
        multiplier=parse_decimal(data.get("multiplier", "1.0"), f"herbs.{data['herb_id']}"),
        special_license=bool(data.get("special_license", False)),
        aliases=_as_tuple(data.get("aliases")),
        display_name=data.get("display_name", ""),
    )


def parse_state(data: dict[str, Any]) -> StateDef:
    return StateDef(
        name=str(data["name"]),
        stage=str(data["stage"]),
        progress=parse_decimal(data["progress"], f"states.{data['name']}.progress"),
        terminal=bool(data.get("terminal", False)),
        requests_milestone=data.get("requests_milestone"),
        description=data.get("description", ""),
    )


def parse_transition(data: dict[str, Any]) -> TransitionDef:
    return TransitionDef(
        from_states=_as_tuple(data["from"]),
        to_state=str(data["to"]),
        role=str(data["role"]),
        action=str(data["action"]),
        guard=data.get("guard"),
        payment_milestone=data.get("payment_milestone"),
        records=data.get("records"),
        issues_certificate=bool(data.get("issues_certificate", False)),
        description=data.get("description", ""),
    )


def parse_alternative_flow(data: dict[str, Any]) -> AlternativeFlowDef:
    return AlternativeFlowDef(
        name=str(data["name"]),
        trigger=str(data["trigger"]),
        from_states=_as_tuple(data["from"]),
        target=str(data["target"]),
        description=data.get("description", ""),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization."""
    canonical = json.dumps(data, sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_configuration_set(data: dict[str, Any]) -> WorkflowConfigurationSet:
    return WorkflowConfigurationSet(
        config_id=str(data["config_id"]),
        version=int(data.get("version", 1)),
        currency=str(data.get("currency", "THB")),
        initial_state=str(data.get("initial_state", "draft")),
        total_progress_steps=parse_decimal(
            data.get("total_progress_steps", "8"), "total_progress_steps",
        ),
        thresholds=parse_thresholds(data["thresholds"]),
        documents=parse_documents(data["documents"]),
        fees=tuple(parse_fee(f) for f in data.get("fees", [])),
        herbs=tuple(parse_herb(h) for h in data.get("herbs", [])),
        states=tuple(parse_state(s) for s in data["states"]),
        transitions=tuple(parse_transition(t) for t in data["transitions"]),
        alternative_flows=tuple(
            parse_alternative_flow(f) for f in data.get("alternative_flows", [])
        ),
        checksum=compute_checksum(data),
    )


def load_configuration_set(path: Path) -> WorkflowConfigurationSet:
    return parse_configuration_set(load_yaml_file(path))
