"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Redis connectivity (escalation queue)
- PayPal OAuth reachability
"""
from typing import Any, Dict

import structlog
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lesson_payments.core.escalation import EscalationQueue
from lesson_payments.integrations.paypal_client import GatewayError, PayPalClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the purchase flow's dependencies."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        escalations: EscalationQueue,
        gateway: PayPalClient,
    ) -> None:
        self.session_factory = session_factory
        self.escalations = escalations
        self.gateway = gateway

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except SQLAlchemyError as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}")

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity and report escalation backlog.

        Raises:
            HealthCheckError: If Redis check fails
        """
        try:
            await self.escalations.ping()
            backlog = await self.escalations.length()
        except RedisError as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}")

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
            "pending_escalations": backlog,
        }

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Check PayPal reachability by fetching an access token.

        Raises:
            HealthCheckError: If the gateway check fails
        """
        try:
            await self.gateway.verify_credentials()
        except GatewayError as e:
            logger.error("gateway_health_check_failed", error=str(e))
            raise HealthCheckError(f"PayPal health check failed: {e}")

        return {
            "status": "healthy",
            "service": "paypal",
            "message": "PayPal API connection successful",
            "test_mode": self.gateway.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("redis", self.check_redis),
            ("paypal", self.check_gateway),
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
        """Liveness probe; does not touch external dependencies."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe; verifies all dependencies are available."""
        return await self.check_all()
