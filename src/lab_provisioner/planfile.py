"""Plan file loading: hosts, collaborator entries and named plans from JSON."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .dispatch import ActionSpec, CollaboratorRegistry, HostSpec, ProbeSpec
from .orchestrator.errors import PlanFileError, PlanValidationError
from .orchestrator.models import ActionCall, RetryPolicy, Stage
from .orchestrator.plan import Plan, merge_stages

logger = logging.getLogger(__name__)

_STAGE_KEYS = {
    "id", "host", "description", "precondition", "postcondition", "action",
    "depends_on", "retry_policy", "eventually_consistent",
    "precondition_retryable", "on_mismatch", "timeout",
}


@dataclass
class PlanFile:
    """Parsed plan file. Named plans are only turned into `Plan`s on demand."""

    hosts: Dict[str, HostSpec]
    registry: CollaboratorRegistry
    plans: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    default_retry: RetryPolicy = field(default_factory=RetryPolicy)
    path: Optional[Path] = None

    @property
    def plan_names(self) -> List[str]:
        return list(self.plans)

    def describe_plans(self) -> List[Dict[str, Any]]:
        rows = []
        for name, payload in self.plans.items():
            rows.append({
                "name": name,
                "description": payload.get("description", ""),
                "include": list(payload.get("include") or []),
                "stages": len(payload.get("stages") or []),
            })
        return rows

    def build_plan(self, name: str) -> Plan:
        if name not in self.plans:
            known = ", ".join(self.plans) or "none"
            raise PlanValidationError([f"unknown plan '{name}' (known plans: {known})"])
        stages = self._collect_stages(name, [])
        payload = self.plans[name]
        return Plan(
            plan_id=name,
            stages=stages,
            hosts=dict(self.hosts),
            description=payload.get("description", ""),
        )

    def _collect_stages(self, name: str, chain: List[str]) -> List[Stage]:
        if name in chain:
            raise PlanValidationError(["plan include cycle: " + " -> ".join(chain + [name])])
        if name not in self.plans:
            raise PlanValidationError([f"plan '{chain[-1]}' includes unknown plan '{name}'"])
        payload = self.plans[name]
        chain = chain + [name]

        groups: List[List[Stage]] = []
        for included in payload.get("include") or []:
            groups.append(self._collect_stages(included, chain))

        try:
            plan_retry = RetryPolicy.from_dict(payload.get("retry_policy"), self.default_retry)
        except (TypeError, ValueError) as exc:
            raise PlanFileError([f"plan '{name}' retry_policy: {exc}"]) from exc
        own = [
            parse_stage(raw, plan_retry, where=f"plan '{name}' stage #{i + 1}")
            for i, raw in enumerate(payload.get("stages") or [])
        ]
        return merge_stages(groups, own)


def parse_stage(raw: Mapping[str, Any], default_retry: RetryPolicy, where: str = "stage") -> Stage:
    if not isinstance(raw, Mapping):
        raise PlanFileError([f"{where}: expected an object"])
    missing = [key for key in ("id", "host", "action") if not raw.get(key)]
    if missing:
        raise PlanFileError([f"{where}: missing {', '.join(missing)}"])
    unknown = sorted(set(raw) - _STAGE_KEYS - {k for k in raw if str(k).startswith("_")})
    if unknown:
        raise PlanFileError([f"{where} ('{raw['id']}'): unknown field(s) {', '.join(unknown)}"])

    action = raw["action"]
    if isinstance(action, str):
        action = {"ref": action}
    if not isinstance(action, Mapping) or not action.get("ref"):
        raise PlanFileError([f"{where} ('{raw['id']}'): action must have a ref"])

    depends_on = raw.get("depends_on") or []
    if isinstance(depends_on, str):
        depends_on = [depends_on]

    try:
        return Stage(
            id=str(raw["id"]),
            host=str(raw["host"]),
            description=raw.get("description", ""),
            action=ActionCall(ref=str(action["ref"]), params=dict(action.get("params") or {})),
            precondition=raw.get("precondition"),
            postcondition=raw.get("postcondition"),
            retry_policy=RetryPolicy.from_dict(raw.get("retry_policy"), default_retry),
            depends_on=frozenset(str(d) for d in depends_on),
            eventually_consistent=bool(raw.get("eventually_consistent", False)),
            precondition_retryable=bool(raw.get("precondition_retryable", False)),
            on_mismatch=raw.get("on_mismatch", "fail"),
            timeout=float(raw["timeout"]) if raw.get("timeout") is not None else None,
        )
    except (TypeError, ValueError) as exc:
        raise PlanFileError([f"{where} ('{raw['id']}'): {exc}"]) from exc


def parse_plan_file(
    payload: Mapping[str, Any],
    *,
    default_transport: str = "ssh",
    default_retry: Optional[RetryPolicy] = None,
    path: Optional[Path] = None,
) -> PlanFile:
    if not isinstance(payload, Mapping):
        raise PlanFileError(["plan file must contain a JSON object"])

    problems: List[str] = []
    hosts: Dict[str, HostSpec] = {}
    for host_id, host_payload in _section(payload, "hosts", problems).items():
        try:
            hosts[host_id] = HostSpec.from_dict(host_id, host_payload or {}, default_transport)
        except (TypeError, ValueError) as exc:
            problems.append(f"host '{host_id}': {exc}")

    registry = CollaboratorRegistry()
    for ref, entry in _section(payload, "actions", problems).items():
        try:
            registry.register_action(ActionSpec.from_dict(ref, entry))
        except (TypeError, ValueError) as exc:
            problems.append(f"action '{ref}': {exc}")
    for ref, entry in _section(payload, "probes", problems).items():
        try:
            registry.register_probe(ProbeSpec.from_dict(ref, entry))
        except (TypeError, ValueError) as exc:
            problems.append(f"probe '{ref}': {exc}")

    plans: Dict[str, Dict[str, Any]] = {}
    for name, body in _section(payload, "plans", problems).items():
        if not isinstance(body, Mapping):
            problems.append(f"plan '{name}': expected an object")
            continue
        plans[name] = dict(body)

    try:
        file_retry = RetryPolicy.from_dict(payload.get("retry_policy"), default_retry)
    except (TypeError, ValueError) as exc:
        problems.append(f"retry_policy: {exc}")
        file_retry = default_retry or RetryPolicy()

    if problems:
        raise PlanFileError(problems)

    logger.debug("Plan file: %d host(s), %d action(s), %d probe(s), %d plan(s)",
                 len(hosts), len(registry.action_refs), len(registry.probe_refs), len(plans))
    return PlanFile(hosts=hosts, registry=registry, plans=plans, default_retry=file_retry, path=path)


def load_plan_file(
    path: Union[str, Path],
    *,
    default_transport: str = "ssh",
    default_retry: Optional[RetryPolicy] = None,
) -> PlanFile:
    plan_path = Path(path)
    try:
        with plan_path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError:
        raise PlanFileError([f"plan file not found: {plan_path}"]) from None
    except json.JSONDecodeError as exc:
        raise PlanFileError([f"{plan_path}: invalid JSON ({exc})"]) from exc
    except OSError as exc:
        raise PlanFileError([f"{plan_path}: {exc}"]) from exc
    return parse_plan_file(
        payload,
        default_transport=default_transport,
        default_retry=default_retry,
        path=plan_path,
    )


def _section(payload: Mapping[str, Any], key: str, problems: List[str]) -> Dict[str, Any]:
    section = payload.get(key)
    if section is None:
        return {}
    if not isinstance(section, Mapping):
        problems.append(f"'{key}' must be an object")
        return {}
    return {k: v for k, v in section.items() if not str(k).startswith("_")}
