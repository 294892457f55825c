"""Collaborator registry: action and probe references with their exit-code policies.

Provisioning actions (directory promotion, database install, endpoint
management, DHCP) are opaque remote commands. The orchestrator only ever sees
them through a reference name, a command template and a classification
function supplied here, so new collaborator tooling can be added without
touching the stage state machine.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional

if TYPE_CHECKING:
    from .dispatcher import CommandOutcome

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

BUILTIN_REACHABLE_PROBE = "builtin.reachable"
BUILTIN_NOOP_ACTION = "builtin.noop"


class Verdict(str, Enum):
    """How a collaborator classifies one exit status."""
    SUCCEEDED = "succeeded"
    RETRYABLE = "retryable"     # 目标系统尚未收敛，可重试
    FATAL = "fatal"             # 永久失败，绝不重试


class ProbeResult(str, Enum):
    """Tri-state answer of a read-only probe."""
    SATISFIED = "satisfied"
    UNSATISFIED = "unsatisfied"          # 确认不存在，可以执行
    INDETERMINATE = "indeterminate"      # 无法判断，不能假设不存在


@dataclass(frozen=True)
class ExitClassification:
    verdict: Verdict
    annotation: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.verdict is Verdict.SUCCEEDED


def render_template(ref: str, template: str, params: Mapping[str, Any]) -> str:
    """Substitute `{{name}}` placeholders.

    Single braces are left alone so PowerShell script blocks survive.
    """
    missing: List[str] = []

    def _replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in params:
            missing.append(name)
            return match.group(0)
        return str(params[name])

    rendered = _PLACEHOLDER.sub(_replace, template)
    if missing:
        raise ValueError(
            f"'{ref}' is missing parameter(s): {', '.join(sorted(set(missing)))}"
        )
    return rendered


def template_parameters(template: str) -> FrozenSet[str]:
    return frozenset(_PLACEHOLDER.findall(template))


@dataclass
class ActionSpec:
    """A remote-invocable action plus its success-classification policy."""

    ref: str
    command: str
    success_codes: FrozenSet[int] = frozenset({0})
    retryable_codes: FrozenSet[int] = frozenset()
    # 特殊的成功码，例如 3010 = "succeeded, reboot required"
    annotations: Dict[int, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    description: str = ""
    classifier: Optional[Callable[[int], ExitClassification]] = None

    def render(self, params: Optional[Mapping[str, Any]] = None) -> str:
        return render_template(self.ref, self.command, params or {})

    def classify(self, exit_code: int) -> ExitClassification:
        if self.classifier is not None:
            return self.classifier(exit_code)
        if exit_code in self.annotations:
            return ExitClassification(Verdict.SUCCEEDED, self.annotations[exit_code])
        if exit_code in self.success_codes:
            return ExitClassification(Verdict.SUCCEEDED)
        if exit_code in self.retryable_codes:
            return ExitClassification(Verdict.RETRYABLE)
        return ExitClassification(Verdict.FATAL)

    @classmethod
    def from_dict(cls, ref: str, payload: Dict[str, Any]) -> "ActionSpec":
        if not isinstance(payload, dict) or not payload.get("command"):
            raise ValueError(f"Action '{ref}' must declare a command")
        annotations = {
            int(code): str(note)
            for code, note in (payload.get("annotations") or {}).items()
        }
        return cls(
            ref=ref,
            command=str(payload["command"]),
            success_codes=frozenset(int(c) for c in payload.get("success_codes", [0])),
            retryable_codes=frozenset(int(c) for c in payload.get("retryable_codes", [])),
            annotations=annotations,
            timeout=_optional_float(payload.get("timeout")),
            description=payload.get("description", ""),
        )


@dataclass
class ProbeSpec:
    """A read-only remote query answering satisfied / unsatisfied / unknown."""

    ref: str
    command: str
    satisfied_codes: FrozenSet[int] = frozenset({0})
    unsatisfied_codes: FrozenSet[int] = frozenset({1})
    stdout_pattern: Optional[str] = None
    timeout: Optional[float] = None
    description: str = ""

    def evaluate(self, outcome: "CommandOutcome") -> ProbeResult:
        if outcome.timed_out or outcome.unreachable:
            return ProbeResult.INDETERMINATE
        if self.stdout_pattern is not None and outcome.exit_code in self.satisfied_codes:
            if re.search(self.stdout_pattern, outcome.stdout or "", re.MULTILINE):
                return ProbeResult.SATISFIED
            return ProbeResult.UNSATISFIED
        if outcome.exit_code in self.satisfied_codes:
            return ProbeResult.SATISFIED
        if outcome.exit_code in self.unsatisfied_codes:
            return ProbeResult.UNSATISFIED
        return ProbeResult.INDETERMINATE

    @classmethod
    def from_dict(cls, ref: str, payload: Dict[str, Any]) -> "ProbeSpec":
        if not isinstance(payload, dict) or not payload.get("command"):
            raise ValueError(f"Probe '{ref}' must declare a command")
        pattern = payload.get("stdout_pattern")
        if pattern is not None:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Probe '{ref}' has an invalid stdout_pattern: {exc}") from exc
        return cls(
            ref=ref,
            command=str(payload["command"]),
            satisfied_codes=frozenset(int(c) for c in payload.get("satisfied_codes", [0])),
            unsatisfied_codes=frozenset(int(c) for c in payload.get("unsatisfied_codes", [1])),
            stdout_pattern=pattern,
            timeout=_optional_float(payload.get("timeout")),
            description=payload.get("description", ""),
        )


class CollaboratorRegistry:
    """Resolves action/probe references to their concrete specs."""

    def __init__(self, *, include_builtins: bool = True) -> None:
        self._actions: Dict[str, ActionSpec] = {}
        self._probes: Dict[str, ProbeSpec] = {}
        if include_builtins:
            self.register_probe(ProbeSpec(
                ref=BUILTIN_REACHABLE_PROBE,
                command="echo ready",
                stdout_pattern="ready",
                timeout=30,
                description="Host answers commands again (e.g. after a reboot)",
            ))
            self.register_action(ActionSpec(
                ref=BUILTIN_NOOP_ACTION,
                command="echo noop",
                timeout=30,
                description="Does nothing; pair with a probe to wait for state",
            ))

    def register_action(self, spec: ActionSpec) -> None:
        self._actions[spec.ref] = spec

    def register_probe(self, spec: ProbeSpec) -> None:
        self._probes[spec.ref] = spec

    def action(self, ref: str) -> ActionSpec:
        try:
            return self._actions[ref]
        except KeyError:
            raise KeyError(f"Unknown action reference: {ref}") from None

    def probe(self, ref: str) -> ProbeSpec:
        try:
            return self._probes[ref]
        except KeyError:
            raise KeyError(f"Unknown probe reference: {ref}") from None

    def has_action(self, ref: str) -> bool:
        return ref in self._actions

    def has_probe(self, ref: str) -> bool:
        return ref in self._probes

    @property
    def action_refs(self) -> List[str]:
        return sorted(self._actions)

    @property
    def probe_refs(self) -> List[str]:
        return sorted(self._probes)

    def update(self, actions: Iterable[ActionSpec] = (), probes: Iterable[ProbeSpec] = ()) -> None:
        for spec in actions:
            self.register_action(spec)
        for spec in probes:
            self.register_probe(spec)


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)
