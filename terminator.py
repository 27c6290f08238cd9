#!/usr/bin/env python3
"""
terminator.py

Tag-driven start/stop/terminate scheduler for EC2 instances.

Each invocation lists the fleet, reads the "Auto On", "Auto Off", "Auto Kill",
"Auto TGR" and "Auto TGD" cron tags of every instance and applies whatever is
due this minute. Nothing is persisted between invocations: the instance tags
and its live state are the only inputs.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, ContextManager, Dict, List, Mapping, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from botocore.exceptions import BotoCoreError, ClientError
from croniter import croniter

import aws_control


DEFAULT_CONFIG = "terminator.yaml"
CONFIG_ENV = "TERMINATOR_CONFIG"
LOG_FILE_ENV = "TERMINATOR_LOG_FILE"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_MAX_POLICIES = 20
DEFAULT_MAX_WORKERS = 16
DEFAULT_CHECK_COUNT = 5
DEFAULT_TARGET_GROUP_PORT = "80"
MIN_PORT = 1
MAX_PORT = 65535
MIN_YEAR = 1970
MAX_YEAR = 2199
MAX_PREVIEW_SCAN = 10000

AUTO_MARKER = "Auto"
TAG_NAME = "Name"
TAG_DISABLE_ALL = "Terminator Disable All"
TAG_DISABLE = "Terminator Disable"
TAG_AUTO_ON = "Auto On"
TAG_AUTO_OFF = "Auto Off"
TAG_AUTO_KILL = "Auto Kill"
TAG_AUTO_TGR = "Auto TGR"
TAG_AUTO_TGD = "Auto TGD"
TAG_TARGET_GROUPS = "Target Groups"
TAG_TARGET_GROUPS_ALIAS = "TG"

TRUE_TOKENS = {"true", "yes", "on", "1"}
FALSE_TOKENS = {"false", "no", "off", "0"}
SETTINGS_KEYS = {
    "version",
    "timezone",
    "region",
    "max_policies",
    "first_suffix_is_empty",
    "max_workers",
    "dry_run",
    "serialize_resource_actions",
}


class TerminatorError(Exception):
    """Base error for terminator."""


class ConfigError(TerminatorError):
    """Config validation error."""


class ScheduleParseError(TerminatorError):
    """Malformed cron expression in a schedule tag."""


class SchedulingConflictError(TerminatorError):
    """Two mutually exclusive schedules are due in the same minute."""


class DispatchError(TerminatorError):
    """An EC2 or ELB call issued for an action failed."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("terminator")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    # Lambda only allows writes under /tmp, so the file log is opt-in.
    log_file = os.environ.get(LOG_FILE_ENV)
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


logger = setup_logging()
UTC = timezone.utc


class PowerState(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    TERMINATED = "terminated"
    OTHER = "other"

    @staticmethod
    def from_name(name: Optional[str]) -> "PowerState":
        for state in (PowerState.RUNNING, PowerState.STOPPED, PowerState.TERMINATED):
            if name == state.value:
                return state
        return PowerState.OTHER


class ScheduleMatch(Enum):
    ACTIVE = 0
    INACTIVE = -1
    NOT_CONFIGURED = -2


class ActionKind(Enum):
    START = "start"
    STOP = "stop"
    TERMINATE = "terminate"
    REGISTER = "register"
    DEREGISTER = "deregister"
    NOOP = "noop"


@dataclass(frozen=True)
class TargetGroupBinding:
    name: str
    port: int


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    binding: Optional[TargetGroupBinding] = None

    @property
    def is_target_group(self) -> bool:
        return self.kind in {ActionKind.REGISTER, ActionKind.DEREGISTER}

    def describe(self) -> str:
        if self.binding is None:
            return self.kind.value
        return f"{self.kind.value} {self.binding.name}:{self.binding.port}"


NOOP = Action(ActionKind.NOOP)


@dataclass(frozen=True)
class Policy:
    index: int
    suffix: str
    disabled: bool = False
    on_expr: Optional[str] = None
    off_expr: Optional[str] = None
    kill_expr: Optional[str] = None
    tgr_expr: Optional[str] = None
    tgd_expr: Optional[str] = None

    @property
    def expressions(self) -> Dict[str, Optional[str]]:
        return {
            f"{TAG_AUTO_ON}{self.suffix}": self.on_expr,
            f"{TAG_AUTO_OFF}{self.suffix}": self.off_expr,
            f"{TAG_AUTO_KILL}{self.suffix}": self.kill_expr,
            f"{TAG_AUTO_TGR}{self.suffix}": self.tgr_expr,
            f"{TAG_AUTO_TGD}{self.suffix}": self.tgd_expr,
        }

    @property
    def is_inert(self) -> bool:
        return not any(self.expressions.values())


@dataclass(frozen=True)
class ResourceState:
    id: str
    power_state: PowerState
    tags: Dict[str, str] = field(default_factory=dict)
    target_groups: Tuple[TargetGroupBinding, ...] = ()

    @property
    def name(self) -> Optional[str]:
        return self.tags.get(TAG_NAME)

    @property
    def label(self) -> str:
        return f"{self.id} ({self.name})" if self.name else self.id

    @staticmethod
    def from_instance(instance: Mapping[str, Any]) -> "ResourceState":
        tags = {tag["Key"]: tag.get("Value", "") for tag in instance.get("Tags") or []}
        return ResourceState(
            id=instance["InstanceId"],
            power_state=PowerState.from_name((instance.get("State") or {}).get("Name")),
            tags=tags,
        )


@dataclass(frozen=True)
class ScheduleMatches:
    on: ScheduleMatch = ScheduleMatch.NOT_CONFIGURED
    off: ScheduleMatch = ScheduleMatch.NOT_CONFIGURED
    kill: ScheduleMatch = ScheduleMatch.NOT_CONFIGURED
    tgr: ScheduleMatch = ScheduleMatch.NOT_CONFIGURED
    tgd: ScheduleMatch = ScheduleMatch.NOT_CONFIGURED

    @property
    def on_due(self) -> bool:
        return self.on is ScheduleMatch.ACTIVE

    @property
    def off_due(self) -> bool:
        return self.off is ScheduleMatch.ACTIVE

    @property
    def kill_due(self) -> bool:
        return self.kill is ScheduleMatch.ACTIVE

    @property
    def tgr_due(self) -> bool:
        return self.tgr is ScheduleMatch.ACTIVE

    @property
    def tgd_due(self) -> bool:
        return self.tgd is ScheduleMatch.ACTIVE


@dataclass(frozen=True)
class Decision:
    target_group_actions: List[Action]
    power_action: Action = NOOP

    @property
    def actions(self) -> List[Action]:
        out = list(self.target_group_actions)
        if self.power_action.kind is not ActionKind.NOOP:
            out.append(self.power_action)
        return out


@dataclass
class DispatchRecord:
    resource_id: str
    policy_index: int
    action: Action
    success: bool
    dry_run: bool = False
    error: Optional[str] = None


@dataclass
class PolicyResult:
    policy_index: int
    decision: Optional[Decision] = None
    records: List[DispatchRecord] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None or any(not record.success for record in self.records)


@dataclass
class ResourceResult:
    resource_id: str
    processed: bool
    disabled_all: bool = False
    policies: List[PolicyResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def records(self) -> List[DispatchRecord]:
        return [record for policy in self.policies for record in policy.records]

    @property
    def failures(self) -> int:
        return sum(1 for policy in self.policies if policy.failed) + (1 if self.error else 0)


@dataclass
class CycleReport:
    resources: int = 0
    results: List[ResourceResult] = field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def processed(self) -> int:
        return sum(1 for result in self.results if result.processed)

    @property
    def records(self) -> List[DispatchRecord]:
        return [record for result in self.results for record in result.records]

    @property
    def failures(self) -> int:
        return sum(result.failures for result in self.results)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "resources": self.resources,
            "processed": self.processed,
            "actions": [
                {
                    "instanceId": record.resource_id,
                    "policy": record.policy_index,
                    "action": record.action.describe(),
                    "success": record.success,
                    "dryRun": record.dry_run,
                }
                for record in self.records
            ],
            "failures": self.failures,
            "elapsedMs": self.elapsed_ms,
        }


@dataclass(frozen=True)
class Settings:
    timezone: ZoneInfo = ZoneInfo(DEFAULT_TIMEZONE)
    timezone_name: str = DEFAULT_TIMEZONE
    region: Optional[str] = None
    max_policies: int = DEFAULT_MAX_POLICIES
    first_suffix_is_empty: bool = True
    max_workers: int = DEFAULT_MAX_WORKERS
    dry_run: bool = False
    serialize_resource_actions: bool = False


# --- configuration ---------------------------------------------------------


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def _load_yaml_mapping(path: Path, what: str) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Error: {what} file not found: {path}")
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Error: Top-level {what} must be a mapping.")
    return payload


def parse_settings(payload: Mapping[str, Any]) -> Settings:
    unknown = set(payload.keys()) - SETTINGS_KEYS
    if unknown:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown)}.")

    timezone_name = ensure_str(payload.get("timezone", DEFAULT_TIMEZONE), "timezone")
    region_raw = payload.get("region")
    region = ensure_str(region_raw, "region") if region_raw is not None else None

    return Settings(
        timezone=parse_timezone(timezone_name, "timezone"),
        timezone_name=timezone_name,
        region=region,
        max_policies=ensure_int(payload.get("max_policies"), "max_policies", DEFAULT_MAX_POLICIES),
        first_suffix_is_empty=ensure_bool(
            payload.get("first_suffix_is_empty"), "first_suffix_is_empty", True
        ),
        max_workers=ensure_int(payload.get("max_workers"), "max_workers", DEFAULT_MAX_WORKERS),
        dry_run=ensure_bool(payload.get("dry_run"), "dry_run", False),
        serialize_resource_actions=ensure_bool(
            payload.get("serialize_resource_actions"), "serialize_resource_actions", False
        ),
    )


def load_settings(config_path: Optional[Path] = None) -> Settings:
    env_path = os.environ.get(CONFIG_ENV)
    explicit = config_path is not None or bool(env_path)
    path = config_path or Path(env_path or DEFAULT_CONFIG)
    if not path.exists() and not explicit:
        return Settings()
    return parse_settings(_load_yaml_mapping(path, "config"))


# --- schedule evaluation ---------------------------------------------------


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _parse_year_field(raw: str, field_name: str) -> List[Tuple[int, int, int]]:
    ranges: List[Tuple[int, int, int]] = []
    for part in raw.split(","):
        base, step = part, 1
        if "/" in part:
            base, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) <= 0:
                raise ScheduleParseError(f'Invalid year step "{part}" at {field_name}.')
            step = int(step_str)
        if base == "*":
            start, end = MIN_YEAR, MAX_YEAR
        elif "-" in base:
            left, right = base.split("-", 1)
            if not left.isdigit() or not right.isdigit() or int(left) > int(right):
                raise ScheduleParseError(f'Invalid year range "{part}" at {field_name}.')
            start, end = int(left), int(right)
        elif base.isdigit():
            start = int(base)
            end = MAX_YEAR if "/" in part else start
        else:
            raise ScheduleParseError(f'Invalid year "{part}" at {field_name}.')
        ranges.append((start, end, step))
    return ranges


def _year_allowed(years: Optional[List[Tuple[int, int, int]]], year: int) -> bool:
    if years is None:
        return True
    return any(start <= year <= end and (year - start) % step == 0 for start, end, step in years)


def compile_expression(
    expr: str, field_name: str = "schedule"
) -> Tuple[str, Optional[List[Tuple[int, int, int]]]]:
    """Split a 5-field cron or 6-field EventBridge-style expression.

    Returns the 5-field expression croniter understands and, for the 6-field
    form, the parsed year ranges.
    """
    fields = expr.replace("?", "*").split()
    if len(fields) not in (5, 6):
        raise ScheduleParseError(
            f'Invalid schedule "{expr}" at {field_name}: expected 5 fields (or 6 with year).'
        )
    cron_expr = " ".join(fields[:5])
    if not croniter.is_valid(cron_expr):
        raise ScheduleParseError(f'Invalid schedule "{expr}" at {field_name}.')
    years = _parse_year_field(fields[5], field_name) if len(fields) == 6 else None
    return cron_expr, years


def evaluate_schedule(
    expr: Optional[str],
    now: datetime,
    tz: ZoneInfo = ZoneInfo(DEFAULT_TIMEZONE),
    field_name: str = "schedule",
) -> ScheduleMatch:
    if expr is None or not expr.strip():
        return ScheduleMatch.NOT_CONFIGURED
    cron_expr, years = compile_expression(expr.strip(), field_name)
    local = _ensure_aware_utc(now).astimezone(tz).replace(second=0, microsecond=0)
    if not _year_allowed(years, local.year):
        return ScheduleMatch.INACTIVE
    if croniter.match(cron_expr, local):
        return ScheduleMatch.ACTIVE
    return ScheduleMatch.INACTIVE


def next_due_times(
    expr: str,
    count: int,
    after: Optional[datetime] = None,
    tz: ZoneInfo = ZoneInfo(DEFAULT_TIMEZONE),
) -> List[datetime]:
    cron_expr, years = compile_expression(expr.strip())
    start = _ensure_aware_utc(after or datetime.now(tz=UTC)).astimezone(tz)
    last_year = max(end for _, end, _ in years) if years else None
    iterator = croniter(cron_expr, start)
    runs: List[datetime] = []
    for _ in range(MAX_PREVIEW_SCAN):
        if len(runs) >= count:
            break
        nxt = iterator.get_next(datetime)
        if nxt.tzinfo is None:
            nxt = nxt.replace(tzinfo=tz)
        if last_year is not None and nxt.year > last_year:
            break
        if _year_allowed(years, nxt.year):
            runs.append(nxt.astimezone(UTC))
    return runs


# --- tag parsing -----------------------------------------------------------


def parse_tag_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    token = value.strip().lower()
    if token in TRUE_TOKENS:
        return True
    if token in FALSE_TOKENS:
        return False
    return default


def _tag_text(tags: Mapping[str, str], key: str) -> Optional[str]:
    value = tags.get(key)
    if value is None or not value.strip():
        return None
    return value.strip()


def _parse_port(raw: str) -> Optional[int]:
    try:
        port = int(raw.strip())
    except ValueError:
        return None
    if port < MIN_PORT or port > MAX_PORT:
        return None
    return port


def target_groups_tag(tags: Mapping[str, str]) -> Optional[str]:
    value = tags.get(TAG_TARGET_GROUPS)
    return value if value is not None else tags.get(TAG_TARGET_GROUPS_ALIAS)


def parse_target_groups(raw: Optional[str], resource_id: str = "") -> List[TargetGroupBinding]:
    """Parse a "Target Groups" tag value such as ``web:80,api:8080``.

    A value without any ``:`` is port shorthand: every name is bound to port
    80. Otherwise each comma-separated element must be ``name:port`` and
    elements that are not are dropped with a warning.
    """
    if not raw:
        return []

    names = raw.split(",")
    shorthand = ":" not in raw
    ports: List[str] = [] if shorthand else raw.split(",")

    # Extrapolate by the last port, or the default port when none was given.
    while len(names) > len(ports):
        ports.append(ports[-1] if ports else DEFAULT_TARGET_GROUP_PORT)
    while len(ports) > len(names):
        names.append(names[-1])

    bindings: List[TargetGroupBinding] = []
    for name_item, port_item in zip(names, ports):
        entry = f"{name_item.strip()}:{port_item.strip()}" if shorthand else name_item.strip()
        parts = entry.split(":")
        port = _parse_port(parts[1]) if len(parts) == 2 else None
        if len(parts) != 2 or not parts[0].strip() or port is None:
            logger.warning(
                "Invalid Target Groups (TG) definition '%s' for instance %s.",
                name_item,
                resource_id or "undefined",
            )
            continue
        bindings.append(TargetGroupBinding(name=parts[0].strip(), port=port))
    return bindings


def policy_suffix(index: int, first_suffix_is_empty: bool = True) -> str:
    if index == 0 and first_suffix_is_empty:
        return ""
    return f" {index + 1}"


def is_managed(tags: Mapping[str, str]) -> bool:
    return any(AUTO_MARKER in key for key in tags)


def is_disabled_all(tags: Mapping[str, str]) -> bool:
    return parse_tag_bool(tags.get(TAG_DISABLE_ALL))


def extract_policies(
    tags: Mapping[str, str],
    max_policies: int = DEFAULT_MAX_POLICIES,
    first_suffix_is_empty: bool = True,
) -> List[Policy]:
    policies: List[Policy] = []
    for index in range(max_policies):
        suffix = policy_suffix(index, first_suffix_is_empty)
        if parse_tag_bool(tags.get(f"{TAG_DISABLE}{suffix}")):
            policies.append(Policy(index=index, suffix=suffix, disabled=True))
            continue
        policy = Policy(
            index=index,
            suffix=suffix,
            on_expr=_tag_text(tags, f"{TAG_AUTO_ON}{suffix}"),
            off_expr=_tag_text(tags, f"{TAG_AUTO_OFF}{suffix}"),
            kill_expr=_tag_text(tags, f"{TAG_AUTO_KILL}{suffix}"),
            tgr_expr=_tag_text(tags, f"{TAG_AUTO_TGR}{suffix}"),
            tgd_expr=_tag_text(tags, f"{TAG_AUTO_TGD}{suffix}"),
        )
        if policy.is_inert:
            continue
        policies.append(policy)
    return policies


# --- decisions -------------------------------------------------------------


def evaluate_policy(
    policy: Policy, now: datetime, tz: ZoneInfo = ZoneInfo(DEFAULT_TIMEZONE)
) -> ScheduleMatches:
    s = policy.suffix
    return ScheduleMatches(
        on=evaluate_schedule(policy.on_expr, now, tz, f"{TAG_AUTO_ON}{s}"),
        off=evaluate_schedule(policy.off_expr, now, tz, f"{TAG_AUTO_OFF}{s}"),
        kill=evaluate_schedule(policy.kill_expr, now, tz, f"{TAG_AUTO_KILL}{s}"),
        tgr=evaluate_schedule(policy.tgr_expr, now, tz, f"{TAG_AUTO_TGR}{s}"),
        tgd=evaluate_schedule(policy.tgd_expr, now, tz, f"{TAG_AUTO_TGD}{s}"),
    )


def decide(
    power_state: PowerState,
    matches: ScheduleMatches,
    bindings: Sequence[TargetGroupBinding] = (),
) -> Decision:
    if matches.on_due and matches.off_due:
        raise SchedulingConflictError(
            "Auto On and Auto Off are both due; set the cron expressions not to overlap."
        )
    if matches.tgr_due and matches.tgd_due:
        raise SchedulingConflictError(
            "Auto TGR and Auto TGD are both due; set the cron expressions not to overlap."
        )

    running = power_state is PowerState.RUNNING
    stopped = power_state is PowerState.STOPPED

    target_group_actions: List[Action] = []
    if running and bindings and (matches.tgr_due or matches.tgd_due):
        kind = ActionKind.DEREGISTER if matches.tgd_due else ActionKind.REGISTER
        target_group_actions = [Action(kind, binding) for binding in bindings]

    # Kill on a running instance only stops it; termination needs a stopped one.
    if running and (matches.off_due or matches.kill_due):
        power_action = Action(ActionKind.STOP)
    elif stopped and matches.on_due and not matches.kill_due:
        power_action = Action(ActionKind.START)
    elif stopped and matches.kill_due:
        power_action = Action(ActionKind.TERMINATE)
    else:
        power_action = NOOP

    return Decision(target_group_actions=target_group_actions, power_action=power_action)


# --- dispatch --------------------------------------------------------------


def _cron_for(policy: Policy, action: Action) -> Optional[str]:
    if action.kind is ActionKind.STOP:
        return policy.off_expr or policy.kill_expr
    if action.kind is ActionKind.START:
        return policy.on_expr
    if action.kind is ActionKind.TERMINATE:
        return policy.kill_expr
    if action.kind is ActionKind.REGISTER:
        return policy.tgr_expr
    if action.kind is ActionKind.DEREGISTER:
        return policy.tgd_expr
    return None


class ActionDispatcher:
    """Issues decided actions through the power and target group controls."""

    def __init__(
        self,
        power: Any,
        target_groups: Any,
        dry_run: bool = False,
        serialize_resource_actions: bool = False,
    ):
        self.power = power
        self.target_groups = target_groups
        self.dry_run = dry_run
        self.serialize_resource_actions = serialize_resource_actions
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def dispatch(self, resource: ResourceState, policy: Policy, action: Action) -> Optional[DispatchRecord]:
        """Issue one action; returns None when a target group binding was skipped."""
        cron = _cron_for(policy, action)
        if self.dry_run:
            logger.info(
                "[dry-run] Would %s EC2 Instance %s (policy %s), Cron: %s",
                action.describe(),
                resource.label,
                policy.index,
                cron,
            )
            return DispatchRecord(resource.id, policy.index, action, success=True, dry_run=True)

        try:
            with self._resource_lock(resource.id):
                issued = self._issue(resource, policy, action, cron)
        except DispatchError as exc:
            logger.error(
                "Failed to %s EC2 Instance %s (policy %s), Auto On: '%s', Auto Off: '%s', "
                "Auto Kill: '%s', Error: %s",
                action.describe(),
                resource.label,
                policy.index,
                policy.on_expr,
                policy.off_expr,
                policy.kill_expr,
                exc,
            )
            return DispatchRecord(resource.id, policy.index, action, success=False, error=str(exc))
        if not issued:
            return None
        return DispatchRecord(resource.id, policy.index, action, success=True)

    def _resource_lock(self, resource_id: str) -> ContextManager[Any]:
        if not self.serialize_resource_actions:
            return nullcontext()
        with self._locks_guard:
            return self._locks.setdefault(resource_id, threading.Lock())

    def _issue(self, resource: ResourceState, policy: Policy, action: Action, cron: Optional[str]) -> bool:
        try:
            if action.is_target_group:
                return self._issue_target_group(resource, action, cron)
            if action.kind is ActionKind.STOP:
                logger.info("Stopping EC2 Instance %s, Cron: %s", resource.label, cron)
                result = self.power.stop(resource.id)
            elif action.kind is ActionKind.START:
                logger.info("Starting EC2 Instance %s, Cron: %s", resource.label, cron)
                result = self.power.start(resource.id, f"Terminator Auto On, Cron: {cron}")
            elif action.kind is ActionKind.TERMINATE:
                logger.info("Terminating EC2 Instance %s, Cron: %s", resource.label, cron)
                result = self.power.terminate(resource.id)
            else:
                return False
            logger.info("EC2 Instance %s, StateChange: %s", resource.label, result)
            return True
        except (ClientError, BotoCoreError) as exc:
            raise DispatchError(f"{action.describe()} failed for {resource.id}: {exc}") from exc

    def _issue_target_group(self, resource: ResourceState, action: Action, cron: Optional[str]) -> bool:
        binding = action.binding
        if binding is None:
            return False
        handle = self.target_groups.lookup(binding.name)
        if handle is None:
            logger.warning(
                "Target Group %s defined within instance %s tags was not found",
                binding.name,
                resource.id,
            )
            return False
        if action.kind is ActionKind.DEREGISTER:
            self.target_groups.deregister(handle, resource.id, binding.port)
            logger.info(
                "Success Instance %s was deregistered from Target Group %s. Cron: %s",
                resource.id,
                binding.name,
                cron,
            )
        else:
            self.target_groups.register(handle, resource.id, binding.port)
            logger.info(
                "Success Instance %s was registered in Target Group %s on port %s. Cron: %s",
                resource.id,
                binding.name,
                binding.port,
                cron,
            )
        return True


# --- orchestration ---------------------------------------------------------


class ResourceProcessor:
    """Evaluates every policy of one instance and dispatches what is due."""

    def __init__(self, dispatcher: ActionDispatcher, settings: Optional[Settings] = None):
        self.dispatcher = dispatcher
        self.settings = settings or Settings()

    def process(self, resource: ResourceState, now: datetime) -> ResourceResult:
        if not is_managed(resource.tags):
            return ResourceResult(resource.id, processed=False)

        logger.info(
            "Processing Update and Tag Validation of EC2 Instance %s, Name: %s",
            resource.id,
            resource.name,
        )
        result = ResourceResult(resource.id, processed=True, disabled_all=is_disabled_all(resource.tags))

        if not result.disabled_all:
            bindings = parse_target_groups(target_groups_tag(resource.tags), resource.id)
            snapshot = replace(resource, target_groups=tuple(bindings))
            policies = extract_policies(
                resource.tags,
                max_policies=self.settings.max_policies,
                first_suffix_is_empty=self.settings.first_suffix_is_empty,
            )
            for policy in policies:
                if policy.disabled:
                    logger.debug("Policy %s of EC2 Instance %s is disabled", policy.index, resource.id)
            active = [policy for policy in policies if not policy.disabled]
            if active:
                workers = min(len(active), self.settings.max_policies)
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="terminator-policy") as pool:
                    result.policies = list(
                        pool.map(lambda policy: self.process_policy(snapshot, policy, now), active)
                    )

        logger.info(
            "Finished Processing and Tag Validation of EC2 Instance %s, DisableAll: %s",
            resource.label,
            result.disabled_all,
        )
        return result

    def process_policy(self, resource: ResourceState, policy: Policy, now: datetime) -> PolicyResult:
        logger.debug("Evaluating policy %s of EC2 Instance %s", policy.index, resource.id)
        result = PolicyResult(policy.index)
        try:
            matches = evaluate_policy(policy, now, self.settings.timezone)
            result.decision = decide(resource.power_state, matches, resource.target_groups)
            for action in result.decision.actions:
                record = self.dispatcher.dispatch(resource, policy, action)
                if record is not None:
                    result.records.append(record)
        except (ScheduleParseError, SchedulingConflictError) as exc:
            logger.error(self._failure_line(resource, policy, exc))
            result.error = str(exc)
        except Exception as exc:
            logger.exception(self._failure_line(resource, policy, exc))
            result.error = str(exc)
        return result

    @staticmethod
    def _failure_line(resource: ResourceState, policy: Policy, exc: Exception) -> str:
        return (
            f"Failed Update or Tag Validation of EC2 Instance {resource.label} (policy {policy.index}), "
            f"Auto On: '{policy.on_expr}', Auto Off: '{policy.off_expr}', "
            f"Auto Kill: '{policy.kill_expr}', Error: {exc}"
        )


class Ec2ResourceLister:
    def __init__(self, ec2: aws_control.Ec2Control):
        self.ec2 = ec2

    def list_resources(self) -> List[ResourceState]:
        return [ResourceState.from_instance(instance) for instance in self.ec2.list_instances()]


class FleetOrchestrator:
    """Runs one evaluation cycle over every instance the lister returns."""

    def __init__(self, lister: Any, processor: ResourceProcessor, settings: Optional[Settings] = None):
        self.lister = lister
        self.processor = processor
        self.settings = settings or processor.settings

    def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        started = time.monotonic()
        now = _ensure_aware_utc(now or datetime.now(tz=UTC))
        report = CycleReport()
        logger.info("Terminator cycle started at %s", now.isoformat())
        try:
            resources = self.lister.list_resources()
            report.resources = len(resources)
            if not resources:
                logger.info("Terminator can't process tags, not a single EC2 Instance was found.")
                return report

            with ThreadPoolExecutor(
                max_workers=self.settings.max_workers, thread_name_prefix="terminator-resource"
            ) as pool:
                futures = [(resource, pool.submit(self.processor.process, resource, now)) for resource in resources]
                for resource, future in futures:
                    try:
                        report.results.append(future.result())
                    except Exception as exc:
                        logger.exception("Unexpected failure processing EC2 Instance %s: %s", resource.id, exc)
                        report.results.append(ResourceResult(resource.id, processed=True, error=str(exc)))
            return report
        finally:
            report.elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.info("Terminator cycle stopped, evaluated within: %s [ms]", report.elapsed_ms)


def build_orchestrator(settings: Settings) -> FleetOrchestrator:
    session = aws_control.create_session(settings.region)
    ec2 = aws_control.Ec2Control.from_session(session)
    target_groups = aws_control.TargetGroupControl.from_session(session)
    dispatcher = ActionDispatcher(
        power=ec2,
        target_groups=target_groups,
        dry_run=settings.dry_run,
        serialize_resource_actions=settings.serialize_resource_actions,
    )
    processor = ResourceProcessor(dispatcher, settings)
    return FleetOrchestrator(Ec2ResourceLister(ec2), processor, settings)


def lambda_handler(event: Optional[Dict[str, Any]] = None, context: Any = None) -> Dict[str, Any]:
    function_name = getattr(context, "function_name", None) or "terminator"
    started = time.monotonic()
    logger.info("%s => lambda_handler => Started", function_name)
    try:
        settings = load_settings()
        if isinstance(event, dict) and event.get("dryRun") is True:
            settings = replace(settings, dry_run=True)
        report = build_orchestrator(settings).run_cycle()
        return report.to_payload()
    finally:
        logger.info(
            "%s => lambda_handler => Stopped, evaluated within: %s [ms]",
            function_name,
            int((time.monotonic() - started) * 1000),
        )


# --- command line ----------------------------------------------------------


def _load_tags(path: Path) -> Dict[str, str]:
    payload = _load_yaml_mapping(path, "tags")
    return {str(key): "" if value is None else str(value) for key, value in payload.items()}


def _parse_at(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(tz=UTC)
    try:
        return _ensure_aware_utc(datetime.fromisoformat(value))
    except ValueError as exc:
        raise TerminatorError(f'--at must be an ISO datetime, got "{value}".') from exc


def command_run(settings: Settings) -> int:
    report = build_orchestrator(settings).run_cycle()
    return 1 if report.failures else 0


def command_preview(settings: Settings) -> int:
    report = build_orchestrator(replace(settings, dry_run=True)).run_cycle()
    print(f"Instances listed: {report.resources}")
    print(f"Instances processed: {report.processed}")
    records = report.records
    if not records:
        print("No actions due.")
    for record in records:
        print(f"- {record.resource_id} policy {record.policy_index}: {record.action.describe()}")
    return 1 if report.failures else 0


def command_check(settings: Settings, tags_path: Path, state: str, at: Optional[str], count: int) -> int:
    tags = _load_tags(tags_path)
    now = _parse_at(at)
    tz = settings.timezone
    power_state = PowerState.from_name(state)

    print("=" * 80)
    print(f"Tags: {tags_path}")
    print(f"Evaluated at: {now.astimezone(tz).isoformat()} (state={power_state.value})")
    if not is_managed(tags):
        print(f'No tag key contains "{AUTO_MARKER}"; instance would be skipped.')
        return 0
    if is_disabled_all(tags):
        print(f"{TAG_DISABLE_ALL} is set; no policy would be evaluated.")
        return 0

    bindings = parse_target_groups(target_groups_tag(tags), str(tags_path))
    if bindings:
        print("Target groups: " + ", ".join(f"{b.name}:{b.port}" for b in bindings))

    exit_code = 0
    policies = extract_policies(tags, settings.max_policies, settings.first_suffix_is_empty)
    if not policies:
        print("No policies found.")
    for policy in policies:
        print("-" * 80)
        print(f"Policy {policy.index} (suffix '{policy.suffix}')" + (" [disabled]" if policy.disabled else ""))
        if policy.disabled:
            continue
        try:
            for key, expr in policy.expressions.items():
                if not expr:
                    continue
                print(f"- {key}: {expr}")
                for run_dt in next_due_times(expr, count, after=now, tz=tz):
                    print(f"    next: {run_dt.astimezone(tz).isoformat()}")
            decision = decide(power_state, evaluate_policy(policy, now, tz), bindings)
        except (ScheduleParseError, SchedulingConflictError) as exc:
            print(f"  Error: {exc}")
            exit_code = 1
            continue
        described = ", ".join(action.describe() for action in decision.actions)
        print(f"  Decision: {described or 'no-op'}")
    print("=" * 80)
    return exit_code


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="terminator: tag-driven EC2 start/stop/terminate scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to terminator YAML config (default: ${CONFIG_ENV} or {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Evaluate the fleet once and apply due actions")
    run_parser.add_argument("--dry-run", action="store_true", help="Log decisions without calling AWS")

    subparsers.add_parser("preview", help="Evaluate the fleet once and print due actions")

    check_parser = subparsers.add_parser("check", help="Evaluate a YAML tag mapping offline")
    check_parser.add_argument("--tags", required=True, help="Path to YAML mapping of tag key to value")
    check_parser.add_argument(
        "--state",
        default=PowerState.RUNNING.value,
        choices=[state.value for state in PowerState],
        help="Instance state to evaluate against (default: running)",
    )
    check_parser.add_argument("--at", help="ISO datetime to evaluate at (default: now)")
    check_parser.add_argument("--count", type=int, default=DEFAULT_CHECK_COUNT, help="Next due time count")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config).resolve() if args.config else None

    try:
        settings = load_settings(config_path)
        if args.command == "run":
            if args.dry_run:
                settings = replace(settings, dry_run=True)
            return command_run(settings)
        if args.command == "preview":
            return command_preview(settings)
        if args.command == "check":
            if args.count <= 0:
                raise TerminatorError("--count must be >= 1")
            return command_check(settings, Path(args.tags), args.state, args.at, args.count)
        raise TerminatorError(f"Unsupported command: {args.command}")
    except TerminatorError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
