"""Account selection policy.

Pure function of the pool state: the same document, instant and flag always
yield the same index, so callers can assert exact outcomes.
"""

from credpool.rotation.accounts import PoolDocument, RotationMode
from credpool.rotation.rate_limit import is_available


def next_index(pool: PoolDocument, now: int, force_switch: bool = False) -> int | None:
    """Pick the account index to use next.

    Args:
        pool: Pool document (not modified)
        now: Current instant (Unix ms)
        force_switch: Advance past the active account even when it is usable

    Returns:
        Index into `pool.accounts`, or None for an empty pool
    """
    accounts = pool.accounts
    count = len(accounts)
    if count == 0:
        return None

    available = [i for i, account in enumerate(accounts) if is_available(account, now)]

    if not available:
        # Every account is rate limited: take the one that resets soonest so
        # the caller has something usable once that instant passes
        return min(
            range(count),
            key=lambda i: (accounts[i].rate_limit_reset_time or 0, i),
        )

    active = pool.active_index

    if pool.rotation_mode == RotationMode.ROUND_ROBIN or force_switch:
        start = 0 if active is None else active + 1
        for step in range(count):
            candidate = (start + step) % count
            if is_available(accounts[candidate], now):
                return candidate

    if active is not None and is_available(accounts[active], now):
        return active

    return available[0]
