"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- FedaPay client circuit state
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text

from deposit_gateway.config import get_settings
from deposit_gateway.database.connection import get_session_factory
from deposit_gateway.integrations.fedapay_client import FedaPayClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    The processor is not called over the network: its circuit breaker
    already reflects the outcome of recent real calls.
    """

    def __init__(self, processor: Optional[FedaPayClient] = None) -> None:
        self.settings = get_settings()
        self.processor = processor

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

            return {
                "status": "healthy",
                "service": "database",
                "message": "Database connection successful",
            }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

    async def check_processor(self) -> Dict[str, Any]:
        """
        Check the FedaPay client.

        Raises:
            HealthCheckError: If the circuit breaker is open
        """
        if self.processor is None:
            raise HealthCheckError("FedaPay client not initialized")

        state = self.processor.circuit_breaker.state
        if state == "open":
            logger.warning("processor_health_check_failed", circuit_state=state)
            raise HealthCheckError("FedaPay circuit breaker is open")

        return {
            "status": "healthy",
            "service": "fedapay",
            "environment": self.settings.fedapay_environment,
            "circuit_state": state,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("fedapay", self.check_processor),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe: the process is up. No dependencies checked."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness probe.

        Only the database gates readiness; an open processor circuit still
        lets the service answer reads, callbacks and webhooks.
        """
        try:
            database = await self.check_database()
        except HealthCheckError as e:
            return {"status": "not_ready", "checks": {"database": {"status": "unhealthy", "error": str(e)}}}
        return {"status": "ready", "checks": {"database": database}}
