import asyncio
import logging

from axmon_core.alert_correlation.service import AlertCorrelationService
from axmon_core.alert_escalation.service import AlertEscalationService
from axmon_core.alert_lifecycle.service import AlertLifecycleService
from axmon_core.collaborators import NoMaintenanceWindows
from axmon_core.config import settings
from axmon_core.database.session import async_session_maker, engine
from axmon_core.logger import setup_logging
from axmon_core.notifier.service import NotifierService
from axmon_core.remediation.actions import ActionDispatcher
from axmon_core.remediation.service import RemediationService
from axmon_core.service_manager.service_manager import ServiceManager
from axmon_core.task_queue.service import BackgroundTaskQueue
from axmon_core.utils import print_banner

logger = logging.getLogger("axmon-core")


async def main():
    """
    Main entry point for the AX monitoring core.
    Wires the engines to their collaborators and runs until interrupted.
    The schema is managed with Alembic (`alembic upgrade head`).
    """
    setup_logging()
    print_banner("AxMon-Core")
    logger.info(f"Starting AxMon-Core ({settings.ENVIRONMENT}, {settings.APP_ENVIRONMENT})...")

    service_manager = ServiceManager()

    # ----------------------------------------------------------------
    # Build services with dependency injection
    # (order matters: dependencies constructed before dependents)
    # ----------------------------------------------------------------
    task_queue = BackgroundTaskQueue()
    notifier_svc = NotifierService()
    maintenance = NoMaintenanceWindows()

    alert_svc = AlertLifecycleService(
        session_factory=async_session_maker,
        maintenance=maintenance,
        notifier=notifier_svc,
        task_queue=task_queue,
    )
    correlation_svc = AlertCorrelationService(
        session_factory=async_session_maker,
        notifier=notifier_svc,
        task_queue=task_queue,
    )
    escalation_svc = AlertEscalationService(
        session_factory=async_session_maker,
        notifier=notifier_svc,
    )
    # Batch-job and session controllers are not wired here; their actions are recorded as skipped.
    dispatcher = ActionDispatcher(notifier=notifier_svc)
    remediation_svc = RemediationService(
        session_factory=async_session_maker,
        dispatcher=dispatcher,
        task_queue=task_queue,
    )

    # Reverse stop order: the queue drains before the notifier closes its HTTP client.
    service_manager.register(notifier_svc)
    service_manager.register(task_queue)
    service_manager.register(alert_svc)
    service_manager.register(correlation_svc)
    service_manager.register(escalation_svc)
    service_manager.register(remediation_svc)

    await service_manager.start_all()

    try:
        # Keep the main loop running
        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        logger.info("AxMon-Core shutting down...")
        await service_manager.stop_all()
        await engine.dispose()
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        raise


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("AxMon-Core stopped by user.")
