"""Rule-driven arbitration of tool-permission requests."""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import CallbackError
from .types import PermissionAction, PermissionRequest

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from .config import PermissionConfig

logger = logging.getLogger("opencode_headless.permissions")

DEFAULT_CALLBACK_TIMEOUT_S = 120.0

READ_ONLY_TOOLS = ("read", "glob", "grep", "list", "todoread")
MUTATING_TOOLS = ("bash", "edit", "write", "todowrite", "webfetch", "task")


class PermissionStrategy(str, Enum):
    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    CALLBACK = "callback"


@dataclass(frozen=True, slots=True)
class Immediate:
    action: PermissionAction


@dataclass(frozen=True, slots=True)
class Deferred:
    pending: Awaitable[Any]


Decision = Immediate | Deferred
PermissionCallback = Callable[[PermissionRequest], Any]


def coerce_action(value: Any) -> PermissionAction | None:
    if isinstance(value, PermissionAction):
        return value
    if isinstance(value, str):
        try:
            return PermissionAction(value.lower())
        except ValueError:
            return None
    return None


def as_decision(value: Any) -> Decision | None:
    """Classify a callback result; ``None`` means unrecognised."""

    if isinstance(value, (Immediate, Deferred)):
        return value
    action = coerce_action(value)
    if action is not None:
        return Immediate(action)
    if inspect.isawaitable(value):
        return Deferred(value)
    return None


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Translate a glob where only ``*`` is special into an anchored regex."""

    return re.compile(".*".join(re.escape(chunk) for chunk in pattern.split("*")), re.DOTALL)


def match_pattern(name: str, pattern: str) -> bool:
    if pattern == "*":
        return True
    return compile_pattern(pattern).fullmatch(name) is not None


@dataclass(frozen=True, slots=True)
class PermissionRule:
    pattern: str
    action: PermissionAction
    condition: Callable[[PermissionRequest], bool] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "action", PermissionAction(self.action))

    def matches(self, request: PermissionRequest) -> bool:
        if not match_pattern(request.tool_name, self.pattern):
            return False
        return self.condition is None or bool(self.condition(request))


class PermissionArbiter:
    """Resolves permission requests to ONCE/ALWAYS/REJECT.

    Rules are scanned in declaration order and the first match wins. When no
    rule matches the strategy decides; with no strategy the request is
    rejected.
    """

    def __init__(
        self,
        rules: Sequence[PermissionRule] = (),
        *,
        strategy: PermissionStrategy | str | None = None,
        callback: PermissionCallback | None = None,
        callback_timeout_s: float | None = DEFAULT_CALLBACK_TIMEOUT_S,
    ) -> None:
        self._rules = tuple(rules)
        self._strategy = PermissionStrategy(strategy) if strategy is not None else None
        self._callback = callback
        self._callback_timeout_s = callback_timeout_s

    @property
    def rules(self) -> tuple[PermissionRule, ...]:
        return self._rules

    @property
    def strategy(self) -> PermissionStrategy | None:
        return self._strategy

    def match_rule(self, request: PermissionRequest) -> PermissionRule | None:
        for rule in self._rules:
            if rule.matches(request):
                return rule
        return None

    async def resolve(self, request: PermissionRequest) -> PermissionAction:
        rule = self.match_rule(request)
        if rule is not None:
            logger.debug(
                "permission_rule_matched",
                extra={"permission_id": request.id, "pattern": rule.pattern, "action": rule.action.value},
            )
            return rule.action

        if self._strategy is PermissionStrategy.AUTO_APPROVE:
            return PermissionAction.ONCE
        if self._strategy is PermissionStrategy.CALLBACK and self._callback is not None:
            try:
                return await self._run_callback(request)
            except CallbackError as exc:
                logger.warning(
                    "permission_callback_rejected",
                    extra={"permission_id": request.id, "reason": exc.reason},
                )
                return PermissionAction.REJECT
        return PermissionAction.REJECT

    async def _run_callback(self, request: PermissionRequest) -> PermissionAction:
        assert self._callback is not None
        try:
            result = self._callback(request)
        except Exception as exc:  # noqa: BLE001
            raise CallbackError(request.id, f"raised {exc.__class__.__name__}: {exc}") from exc

        decision = as_decision(result)
        if decision is None:
            raise CallbackError(request.id, f"unrecognised result {result!r}")
        if isinstance(decision, Immediate):
            return decision.action

        try:
            if self._callback_timeout_s is not None and self._callback_timeout_s > 0:
                value = await asyncio.wait_for(decision.pending, self._callback_timeout_s)
            else:
                value = await decision.pending
        except TimeoutError as exc:
            raise CallbackError(request.id, "timed out") from exc
        except Exception as exc:  # noqa: BLE001
            raise CallbackError(request.id, f"raised {exc.__class__.__name__}: {exc}") from exc

        action = coerce_action(value)
        if action is None:
            raise CallbackError(request.id, f"unrecognised result {value!r}")
        return action

    @classmethod
    def auto_approve(cls) -> PermissionArbiter:
        return cls(strategy=PermissionStrategy.AUTO_APPROVE)

    @classmethod
    def auto_reject(cls) -> PermissionArbiter:
        return cls(strategy=PermissionStrategy.AUTO_REJECT)

    @classmethod
    def safe_defaults(cls, custom_rules: Sequence[PermissionRule] | None = None) -> PermissionArbiter:
        """Read-only tools ALWAYS, mutating tools ONCE, anything else REJECT.

        ``custom_rules`` are checked before the defaults.
        """

        rules = [*(custom_rules or ())]
        rules.extend(PermissionRule(name, PermissionAction.ALWAYS) for name in READ_ONLY_TOOLS)
        rules.extend(PermissionRule(name, PermissionAction.ONCE) for name in MUTATING_TOOLS)
        return cls(
            rules,
            strategy=PermissionStrategy.CALLBACK,
            callback=lambda _request: PermissionAction.REJECT,
        )

    @classmethod
    def from_config(
        cls,
        config: PermissionConfig,
        *,
        callback: PermissionCallback | None = None,
    ) -> PermissionArbiter:
        rules = [PermissionRule(rule.pattern, rule.action) for rule in config.rules]
        if config.preset == "safe_defaults":
            return cls.safe_defaults(rules)
        return cls(
            rules,
            strategy=config.strategy,
            callback=callback,
            callback_timeout_s=config.callback_timeout_s,
        )


__all__ = [
    "Decision",
    "Deferred",
    "Immediate",
    "MUTATING_TOOLS",
    "PermissionArbiter",
    "PermissionCallback",
    "PermissionRule",
    "PermissionStrategy",
    "READ_ONLY_TOOLS",
    "as_decision",
    "coerce_action",
    "match_pattern",
]
