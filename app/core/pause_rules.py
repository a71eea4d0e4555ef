from typing import List, Tuple

from app.models.package import PackageStatus

# (minimum total hours, pauses allowed), largest threshold first
PAUSE_ALLOWANCE: List[Tuple[float, int]] = [
    (60, 3),
    (10, 2),
    (0, 1),
]


def get_max_pauses(total_hours: float) -> int:
    """Number of pauses a package of this size may take over its lifetime"""
    for min_hours, pauses in PAUSE_ALLOWANCE:
        if total_hours >= min_hours:
            return pauses
    return 0


def can_pause(package) -> bool:
    """True if the package is active, running and still has pause allowance"""
    return (
        package.status == PackageStatus.ACTIVE
        and not package.is_paused
        and package.pause_count < get_max_pauses(package.total_hours)
    )


def pauses_remaining(package) -> int:
    return max(0, get_max_pauses(package.total_hours) - package.pause_count)
