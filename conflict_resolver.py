"""Field-level conflict detection and resolution between POS and local records."""
import copy
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from catalog_transform import parse_timestamp
from exceptions import ConflictReviewRequired

logger = logging.getLogger(__name__)


class RuleKind(Enum):
    """How a field conflict is decided."""
    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    MOST_RECENT = "most_recent"
    MANUAL = "manual"
    CUSTOM = "custom"


class ResolutionSource(Enum):
    """Which side supplied the resolved value."""
    REMOTE = "remote"
    LOCAL = "local"
    MANUAL = "manual"


@dataclass
class ConflictRule:
    """Rule attached to one field. CUSTOM rules name a registered strategy."""
    kind: RuleKind
    strategy_id: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConflictData:
    """A field whose remote and local values disagree."""
    field: str
    remote_value: Any
    local_value: Any
    remote_updated_at: Optional[datetime] = None
    local_updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'field': self.field,
            'remote_value': self.remote_value,
            'local_value': self.local_value,
            'remote_updated_at': self.remote_updated_at.isoformat() if self.remote_updated_at else None,
            'local_updated_at': self.local_updated_at.isoformat() if self.local_updated_at else None
        }


@dataclass
class Resolution:
    """Decision for one conflicting field."""
    field: str
    resolved_value: Any
    source: ResolutionSource
    reason: str
    rule: RuleKind
    remote_value: Any = None
    local_value: Any = None

    @property
    def needs_review(self) -> bool:
        return self.source == ResolutionSource.MANUAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            'field': self.field,
            'resolved_value': self.resolved_value,
            'source': self.source.value,
            'reason': self.reason,
            'rule': self.rule.value,
            'remote_value': self.remote_value,
            'local_value': self.local_value
        }


CustomStrategy = Callable[[ConflictData, ConflictRule], Resolution]


def values_equal(a: Any, b: Any) -> bool:
    """Deep equality: lists pairwise, dicts by identical keys and values."""
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, dict) and isinstance(b, dict):
        return set(a.keys()) == set(b.keys()) and all(values_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple, dict)) or isinstance(b, (list, tuple, dict)):
        return False
    return a == b


def format_time_diff(seconds: float) -> str:
    seconds = abs(seconds)
    days = int(seconds // 86400)
    if days > 0:
        return f"{days} day{'s' if days != 1 else ''}"
    hours = int(seconds // 3600)
    if hours > 0:
        return f"{hours} hour{'s' if hours != 1 else ''}"
    minutes = int(seconds // 60)
    if minutes > 0:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    secs = int(seconds)
    return f"{secs} second{'s' if secs != 1 else ''}"


def price_threshold_strategy(conflict: ConflictData, rule: ConflictRule) -> Resolution:
    """Small price drift follows the POS; large drift goes to a human."""
    threshold = float(rule.params.get('threshold', 10.0))
    try:
        difference = abs(float(conflict.remote_value) - float(conflict.local_value))
    except (TypeError, ValueError):
        raise ConflictReviewRequired(conflict.field, "Price missing or not numeric on one side")

    if difference > threshold:
        return Resolution(
            field=conflict.field,
            resolved_value=conflict.remote_value,
            source=ResolutionSource.MANUAL,
            reason=f"Price difference ${difference:.2f} exceeds threshold ${threshold:.2f}, requires manual review",
            rule=RuleKind.CUSTOM,
            remote_value=conflict.remote_value,
            local_value=conflict.local_value
        )

    return Resolution(
        field=conflict.field,
        resolved_value=conflict.remote_value,
        source=ResolutionSource.REMOTE,
        reason="POS source of truth",
        rule=RuleKind.CUSTOM,
        remote_value=conflict.remote_value,
        local_value=conflict.local_value
    )


POLICY_RULES = {
    'remote_wins': ConflictRule(RuleKind.REMOTE_WINS),
    'local_wins': ConflictRule(RuleKind.LOCAL_WINS),
    'most_recent': ConflictRule(RuleKind.MOST_RECENT),
    'manual': ConflictRule(RuleKind.MANUAL),
}


def default_rules(price_threshold: float = 10.0) -> Dict[str, ConflictRule]:
    return {
        'price': ConflictRule(RuleKind.CUSTOM, 'price_threshold', {'threshold': price_threshold}),
        'name': ConflictRule(RuleKind.MOST_RECENT),
        'quantity': ConflictRule(RuleKind.MOST_RECENT),
        'description': ConflictRule(RuleKind.LOCAL_WINS),
        'category_id': ConflictRule(RuleKind.LOCAL_WINS),
        'images': ConflictRule(RuleKind.LOCAL_WINS),
        'is_active': ConflictRule(RuleKind.LOCAL_WINS),
        'sku': ConflictRule(RuleKind.REMOTE_WINS),
    }


class ConflictResolver:
    """Detects and resolves field conflicts with per-field rules.

    One instance per sync run. The manual review queue is bounded; once full
    the oldest entry is dropped. Persisting reviews is the caller's job.
    """

    def __init__(self, rules: Optional[Dict[str, ConflictRule]] = None,
                 price_threshold: float = 10.0, review_queue_limit: int = 1000):
        self._strategies: Dict[str, CustomStrategy] = {'price_threshold': price_threshold_strategy}
        self.rules: Dict[str, ConflictRule] = {}
        for field_name, rule in (rules if rules is not None else default_rules(price_threshold)).items():
            self.set_rule(field_name, rule)
        self.review_queue_limit = review_queue_limit
        self._review_queue: Deque[ConflictData] = deque(maxlen=review_queue_limit)

    # Configuration

    def register_strategy(self, strategy_id: str, strategy: CustomStrategy) -> None:
        self._strategies[strategy_id] = strategy

    def set_rule(self, field_name: str, rule: ConflictRule) -> None:
        if rule.kind == RuleKind.CUSTOM and rule.strategy_id not in self._strategies:
            raise ValueError(f"Unknown conflict strategy '{rule.strategy_id}' for field '{field_name}'")
        self.rules[field_name] = rule

    def get_rule(self, field_name: str, policy: Optional[str] = None) -> ConflictRule:
        if policy and policy != 'default':
            if policy in POLICY_RULES:
                return POLICY_RULES[policy]
            logger.warning(f"Unknown conflict policy '{policy}', using field rules")
        return self.rules.get(field_name, ConflictRule(RuleKind.MOST_RECENT))

    # Detection

    def detect_conflicts(self, remote_record: Dict[str, Any], local_record: Dict[str, Any],
                         remote_updated_at: Any = None, local_updated_at: Any = None) -> List[ConflictData]:
        """One ConflictData per field that differs, over the union of both records' keys."""
        remote_ts = parse_timestamp(remote_updated_at)
        local_ts = parse_timestamp(local_updated_at)
        conflicts = []

        for field_name in sorted(set(remote_record) | set(local_record)):
            remote_value = remote_record.get(field_name)
            local_value = local_record.get(field_name)
            if remote_value is None and local_value is None:
                continue
            if values_equal(remote_value, local_value):
                continue
            conflicts.append(ConflictData(
                field=field_name,
                remote_value=remote_value,
                local_value=local_value,
                remote_updated_at=remote_ts,
                local_updated_at=local_ts
            ))

        return conflicts

    # Resolution

    def resolve(self, conflict: ConflictData, policy: Optional[str] = None,
                enqueue: bool = True) -> Resolution:
        """Pick a value for one conflict. With ``enqueue`` off, manual outcomes are
        reported but not added to the review queue (dry runs)."""
        rule = self.get_rule(conflict.field, policy)

        if rule.kind == RuleKind.REMOTE_WINS:
            resolution = self._pick(conflict, ResolutionSource.REMOTE, rule.kind,
                                    f"Rule for '{conflict.field}': POS value wins")
        elif rule.kind == RuleKind.LOCAL_WINS:
            resolution = self._pick(conflict, ResolutionSource.LOCAL, rule.kind,
                                    f"Rule for '{conflict.field}': local value wins")
        elif rule.kind == RuleKind.MOST_RECENT:
            resolution = self._resolve_most_recent(conflict)
        elif rule.kind == RuleKind.MANUAL:
            resolution = self._pick(conflict, ResolutionSource.MANUAL, rule.kind,
                                    "Manual review required, POS value kept until resolved")
        else:
            try:
                resolution = self._strategies[rule.strategy_id](conflict, rule)
            except ConflictReviewRequired as e:
                resolution = self._pick(conflict, ResolutionSource.MANUAL, rule.kind, e.message)

        if resolution.needs_review and enqueue:
            self._enqueue(conflict)
        return resolution

    def resolve_multiple(self, conflicts: List[ConflictData], policy: Optional[str] = None,
                         enqueue: bool = True) -> List[Resolution]:
        return [self.resolve(conflict, policy, enqueue) for conflict in conflicts]

    def _pick(self, conflict: ConflictData, source: ResolutionSource, rule: RuleKind, reason: str) -> Resolution:
        value = conflict.local_value if source == ResolutionSource.LOCAL else conflict.remote_value
        return Resolution(
            field=conflict.field,
            resolved_value=value,
            source=source,
            reason=reason,
            rule=rule,
            remote_value=conflict.remote_value,
            local_value=conflict.local_value
        )

    def _resolve_most_recent(self, conflict: ConflictData) -> Resolution:
        remote_ts = conflict.remote_updated_at
        local_ts = conflict.local_updated_at
        kind = RuleKind.MOST_RECENT

        if remote_ts is None and local_ts is None:
            return self._pick(conflict, ResolutionSource.REMOTE, kind,
                              "No timestamps available, defaulting to POS value")
        if remote_ts is None:
            return self._pick(conflict, ResolutionSource.LOCAL, kind,
                              "POS timestamp missing, using local value")
        if local_ts is None:
            return self._pick(conflict, ResolutionSource.REMOTE, kind,
                              "Local timestamp missing, using POS value")

        delta = (remote_ts - local_ts).total_seconds()
        if delta > 0:
            return self._pick(conflict, ResolutionSource.REMOTE, kind,
                              f"POS value is newer by {format_time_diff(delta)}")
        if delta < 0:
            return self._pick(conflict, ResolutionSource.LOCAL, kind,
                              f"Local value is newer by {format_time_diff(delta)}")
        return self._pick(conflict, ResolutionSource.REMOTE, kind,
                          "Timestamps are equal, defaulting to POS value")

    # Manual review queue

    def _enqueue(self, conflict: ConflictData) -> None:
        if len(self._review_queue) == self.review_queue_limit:
            dropped = self._review_queue[0]
            logger.warning(f"Manual review queue full ({self.review_queue_limit}), "
                           f"dropping oldest conflict on '{dropped.field}'")
        self._review_queue.append(conflict)

    def get_manual_review_queue(self) -> List[ConflictData]:
        return list(self._review_queue)

    def clear_manual_review_queue(self) -> int:
        count = len(self._review_queue)
        self._review_queue.clear()
        logger.info(f"Cleared {count} conflicts from the manual review queue")
        return count

    # Merging and reporting

    @staticmethod
    def apply_resolutions(base_record: Dict[str, Any], resolutions: List[Resolution]) -> Dict[str, Any]:
        """Copy of ``base_record`` with every resolved value written in."""
        merged = copy.deepcopy(base_record)
        for resolution in resolutions:
            merged[resolution.field] = copy.deepcopy(resolution.resolved_value)
        return merged

    @staticmethod
    def get_stats(resolutions: List[Resolution]) -> Dict[str, int]:
        return {
            'total': len(resolutions),
            'remote_wins': sum(1 for r in resolutions if r.source == ResolutionSource.REMOTE),
            'local_wins': sum(1 for r in resolutions if r.source == ResolutionSource.LOCAL),
            'manual_review': sum(1 for r in resolutions if r.source == ResolutionSource.MANUAL),
        }

    def log_resolution(self, resolution: Resolution, context: str = '') -> None:
        prefix = f"[{context}] " if context else ''
        logger.info(f"{prefix}Conflict on '{resolution.field}' resolved to {resolution.source.value} "
                    f"({resolution.rule.value}): {resolution.reason}")

    def log_resolutions(self, resolutions: List[Resolution], context: str = '') -> None:
        for resolution in resolutions:
            self.log_resolution(resolution, context)
        if resolutions:
            stats = self.get_stats(resolutions)
            logger.info(f"{'[' + context + '] ' if context else ''}Resolved {stats['total']} conflicts: "
                        f"{stats['remote_wins']} POS, {stats['local_wins']} local, "
                        f"{stats['manual_review']} manual")
