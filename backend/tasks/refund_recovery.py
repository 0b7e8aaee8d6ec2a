"""
Refund Recovery Loop - The Safety Net
=====================================
Background task that re-issues refunds the gateway refused or timed out on
during a cancellation.

Cancellations never wait on the gateway: a failed refund leaves the order
`cancelled` with payment `refund_pending`. This loop picks those up.

Features:
- Runs every 5 minutes
- Bounded batch per cycle
- Gives up after a configurable number of attempts and logs for manual action
"""

import os
import asyncio

import structlog

from pipeline.order_lifecycle import OrderLifecycleEngine

# Configure logger
logger = structlog.get_logger().bind(component="refund_recovery")


# =============================================================================
# CONFIGURATION
# =============================================================================

class RefundRecoveryConfig:
    """Refund recovery loop configuration"""

    # How often to look for pending refunds (seconds)
    CHECK_INTERVAL = int(os.getenv("REFUND_RECOVERY_INTERVAL", "300"))

    # Maximum orders to retry per cycle
    BATCH_SIZE = int(os.getenv("REFUND_RECOVERY_BATCH_SIZE", "20"))

    # Attempts before an order is left for manual intervention
    MAX_ATTEMPTS = int(os.getenv("REFUND_RECOVERY_MAX_ATTEMPTS", "5"))

    ENABLED = os.getenv("REFUND_RECOVERY_ENABLED", "true").lower() == "true"


config = RefundRecoveryConfig()


# =============================================================================
# RECOVERY LOGIC
# =============================================================================

async def run_refund_recovery_cycle(engine: OrderLifecycleEngine) -> int:
    """Retry one batch of pending refunds. Returns how many went through."""
    refunded = await engine.retry_pending_refunds(
        limit=config.BATCH_SIZE,
        max_attempts=config.MAX_ATTEMPTS,
    )
    if refunded:
        logger.info("refund_recovery_cycle_complete", refunded=refunded)
    return refunded


async def refund_recovery_loop(engine: OrderLifecycleEngine):
    """
    Background task that runs every `REFUND_RECOVERY_INTERVAL` seconds
    until cancelled.
    """
    logger.info(
        "refund_recovery_started",
        interval=config.CHECK_INTERVAL,
        batch_size=config.BATCH_SIZE,
        enabled=config.ENABLED,
    )

    if not config.ENABLED:
        logger.info("refund_recovery_disabled")
        return

    while True:
        try:
            await run_refund_recovery_cycle(engine)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # One bad cycle must not stop the loop
            logger.error("refund_recovery_error", error=str(e), exc_info=True)

        await asyncio.sleep(config.CHECK_INTERVAL)
