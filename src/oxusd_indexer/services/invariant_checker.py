from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field

from oxusd_indexer.domain.entities import (
    SYSTEM_STATE_ID,
    AllocatorActionType,
    EntityType,
    SavingsActionType,
    SupplyChangeType,
)
from oxusd_indexer.domain.events import MAX_SPREAD_BPS
from oxusd_indexer.obs.metrics import inc_counter
from oxusd_indexer.persistence.uow import UnitOfWork

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvariantViolation:
    check: str
    entity_type: EntityType
    entity_key: str
    expected: str
    actual: str


@dataclass(frozen=True)
class InvariantWarning:
    check: str
    entity_type: EntityType
    entity_key: str
    message: str


@dataclass(frozen=True)
class InvariantReport:
    violations: tuple[InvariantViolation, ...]
    warnings: tuple[InvariantWarning, ...]
    checked_counts: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.violations


class InvariantChecker:
    """Reconciles aggregates against the append-only records that produced them.

    Only records flagged ``applied`` contribute to the expected totals; records
    whose mutation was skipped are reported as warnings. Nothing is corrected.
    """

    def check(self, uow: UnitOfWork) -> InvariantReport:
        violations: list[InvariantViolation] = []
        warnings: list[InvariantWarning] = []
        counts: dict[str, int] = {}

        self._check_supply(uow, violations, warnings, counts)
        self._check_allocators(uow, violations, warnings, counts)
        self._check_users(uow, violations, warnings, counts)
        self._check_routes(uow, violations, counts)

        return InvariantReport(
            violations=tuple(violations),
            warnings=tuple(warnings),
            checked_counts=counts,
        )

    def run(self, uow_factory: Callable[[], UnitOfWork]) -> InvariantReport:
        with uow_factory() as uow:
            report = self.check(uow)
        report_invariants(report)
        return report

    def _check_supply(
        self,
        uow: UnitOfWork,
        violations: list[InvariantViolation],
        warnings: list[InvariantWarning],
        counts: dict[str, int],
    ) -> None:
        expected = 0
        changes = 0
        for change in uow.entities.iter_entities(EntityType.SUPPLY_CHANGE):
            changes += 1
            if not change.applied:
                warnings.append(
                    InvariantWarning(
                        check="supply_unapplied",
                        entity_type=EntityType.SUPPLY_CHANGE,
                        entity_key=change.id,
                        message=f"{change.type.value} of {change.value} was not applied",
                    )
                )
                continue
            if change.type is SupplyChangeType.MINT:
                expected += change.value
            else:
                expected -= change.value
        counts["supply_changes"] = changes

        state = uow.entities.load(EntityType.SYSTEM_STATE, SYSTEM_STATE_ID)
        actual = state.total_supply if state is not None else 0
        if actual != expected:
            violations.append(
                InvariantViolation(
                    check="total_supply",
                    entity_type=EntityType.SYSTEM_STATE,
                    entity_key=SYSTEM_STATE_ID,
                    expected=str(expected),
                    actual=str(actual),
                )
            )
        if actual < 0:
            violations.append(
                InvariantViolation(
                    check="non_negative",
                    entity_type=EntityType.SYSTEM_STATE,
                    entity_key=SYSTEM_STATE_ID,
                    expected=">= 0",
                    actual=str(actual),
                )
            )

    def _check_allocators(
        self,
        uow: UnitOfWork,
        violations: list[InvariantViolation],
        warnings: list[InvariantWarning],
        counts: dict[str, int],
    ) -> None:
        expected: dict[str, int] = defaultdict(int)
        for action in uow.entities.iter_entities(EntityType.ALLOCATOR_ACTION):
            if not action.applied:
                warnings.append(
                    InvariantWarning(
                        check="allocator_action_unapplied",
                        entity_type=EntityType.ALLOCATOR_ACTION,
                        entity_key=action.id,
                        message=(
                            f"{action.type.value} of {action.amount} for "
                            f"{action.allocator} was not applied"
                        ),
                    )
                )
                continue
            sign = 1 if action.type is AllocatorActionType.MINT else -1
            expected[action.allocator] += sign * action.amount

        seen = 0
        for allocator in uow.entities.iter_entities(EntityType.ALLOCATOR):
            seen += 1
            want = expected.pop(allocator.id, 0)
            if allocator.debt != want:
                violations.append(
                    InvariantViolation(
                        check="allocator_debt",
                        entity_type=EntityType.ALLOCATOR,
                        entity_key=allocator.id,
                        expected=str(want),
                        actual=str(allocator.debt),
                    )
                )
            if allocator.debt < 0:
                violations.append(
                    InvariantViolation(
                        check="non_negative",
                        entity_type=EntityType.ALLOCATOR,
                        entity_key=allocator.id,
                        expected=">= 0",
                        actual=str(allocator.debt),
                    )
                )
        for orphan, want in sorted(expected.items()):
            violations.append(
                InvariantViolation(
                    check="allocator_debt",
                    entity_type=EntityType.ALLOCATOR,
                    entity_key=orphan,
                    expected=str(want),
                    actual="missing",
                )
            )
        counts["allocators"] = seen

    def _check_users(
        self,
        uow: UnitOfWork,
        violations: list[InvariantViolation],
        warnings: list[InvariantWarning],
        counts: dict[str, int],
    ) -> None:
        expected: dict[str, int] = defaultdict(int)
        for action in uow.entities.iter_entities(EntityType.SAVINGS_ACTION):
            if not action.applied:
                warnings.append(
                    InvariantWarning(
                        check="savings_action_unapplied",
                        entity_type=EntityType.SAVINGS_ACTION,
                        entity_key=action.id,
                        message=(
                            f"{action.type.value} of {action.shares} shares for "
                            f"{action.user} was not applied"
                        ),
                    )
                )
                continue
            sign = 1 if action.type is SavingsActionType.DEPOSIT else -1
            expected[action.user] += sign * action.shares

        seen = 0
        for user in uow.entities.iter_entities(EntityType.USER):
            seen += 1
            want = expected.pop(user.id, 0)
            if user.s0xusd_balance != want:
                violations.append(
                    InvariantViolation(
                        check="user_balance",
                        entity_type=EntityType.USER,
                        entity_key=user.id,
                        expected=str(want),
                        actual=str(user.s0xusd_balance),
                    )
                )
            if user.s0xusd_balance < 0:
                violations.append(
                    InvariantViolation(
                        check="non_negative",
                        entity_type=EntityType.USER,
                        entity_key=user.id,
                        expected=">= 0",
                        actual=str(user.s0xusd_balance),
                    )
                )
        for orphan, want in sorted(expected.items()):
            violations.append(
                InvariantViolation(
                    check="user_balance",
                    entity_type=EntityType.USER,
                    entity_key=orphan,
                    expected=str(want),
                    actual="missing",
                )
            )
        counts["users"] = seen

    def _check_routes(
        self,
        uow: UnitOfWork,
        violations: list[InvariantViolation],
        counts: dict[str, int],
    ) -> None:
        seen = 0
        for route in uow.entities.iter_entities(EntityType.PSM_ROUTE):
            seen += 1
            if not 0 <= route.spread_bps <= MAX_SPREAD_BPS:
                violations.append(
                    InvariantViolation(
                        check="spread_bps",
                        entity_type=EntityType.PSM_ROUTE,
                        entity_key=route.id,
                        expected=f"0..{MAX_SPREAD_BPS}",
                        actual=str(route.spread_bps),
                    )
                )
            if route.max_depth < 0:
                violations.append(
                    InvariantViolation(
                        check="non_negative",
                        entity_type=EntityType.PSM_ROUTE,
                        entity_key=route.id,
                        expected=">= 0",
                        actual=str(route.max_depth),
                    )
                )
        counts["routes"] = seen


def report_invariants(report: InvariantReport) -> None:
    for violation in report.violations:
        logger.error(
            "invariant_violation",
            extra={
                "extra": {
                    "check": violation.check,
                    "entity_type": violation.entity_type.value,
                    "entity_key": violation.entity_key,
                    "expected": violation.expected,
                    "actual": violation.actual,
                }
            },
        )
        inc_counter("projector_invariant_violations_total", {"check": violation.check})
    logger.info(
        "invariant_check_completed",
        extra={
            "extra": {
                "ok": report.ok,
                "violations": len(report.violations),
                "warnings": len(report.warnings),
                "checked_counts": report.checked_counts,
            }
        },
    )
