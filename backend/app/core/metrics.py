from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_coupon_validated(*, valid: bool) -> None:
    _inc("coupon_validations" if valid else "coupon_validation_rejections")


def record_coupon_redeemed() -> None:
    _inc("coupon_redemptions")


def record_coupon_redeem_rejected(reason: str) -> None:
    _inc("coupon_redeem_rejections")
    _inc(f"coupon_redeem_rejections.{reason.lower()}")


def record_commit_conflict() -> None:
    _inc("coupon_commit_conflicts")


def record_idempotent_replay() -> None:
    _inc("coupon_idempotent_replays")


def record_infrastructure_failure() -> None:
    _inc("coupon_infrastructure_failures")


def record_backpressure_rejection() -> None:
    _inc("coupon_backpressure_rejections")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
