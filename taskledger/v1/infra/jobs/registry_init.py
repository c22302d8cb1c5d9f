"""
Job registry initialization.

Registers the built-in job handlers with the global job registry.
"""

from taskledger.config.logging import get_logger
from taskledger.config.settings import settings
from taskledger.v1.core.registries import job_registry
from taskledger.v1.infra.jobs.handlers import MaintenanceSweepHandler

logger = get_logger(__name__)

MAINTENANCE_SWEEP = "maintenance.sweep"


def register_job_handlers() -> None:
    """Register all job handlers with the job registry."""

    if job_registry.is_frozen() or job_registry.has(MAINTENANCE_SWEEP):
        return

    logger.info("Registering job handlers")

    # Maintenance job handlers
    job_registry.register(MAINTENANCE_SWEEP, MaintenanceSweepHandler(settings))

    logger.info("Job handlers registered", registered_handlers=job_registry.list())


# Auto-register handlers when module is imported
register_job_handlers()
