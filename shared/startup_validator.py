"""
Startup configuration validation module.

Catches misconfigurations at boot (fail-fast) instead of on the first
message a salon sends.

Usage:
    from shared.startup_validator import validate_startup_config, StartupValidationError

    async def main():
        try:
            await validate_startup_config()
        except StartupValidationError as e:
            logger.critical(f"Startup blocked: {e}")
            sys.exit(1)
"""

import logging
import re

from sqlalchemy import text

from shared.config import get_settings

logger = logging.getLogger(__name__)

JWT_SECRET_PLACEHOLDER = "jwt-secret-placeholder"
RESEND_API_KEY_PLACEHOLDER = "re-placeholder"

_JOB_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class StartupValidationError(Exception):
    """Raised when critical startup validation fails."""

    pass


async def validate_startup_config(require_email: bool = False) -> dict[str, bool]:
    """
    Validate all critical configuration at startup.

    Performs tiered validation:
    - TIER 1 (CRITICAL): Block startup if any fail
    - TIER 2 (IMPORTANT): Warn but allow startup

    Args:
        require_email: If True, a missing Resend API key is CRITICAL.
                       The email notification worker sets this; the API
                       only queues digests and can start without it.

    Returns:
        dict of {check_name: passed} for all validations

    Raises:
        StartupValidationError: If any CRITICAL check fails
    """
    settings = get_settings()
    results: dict[str, bool] = {}
    critical_failures: list[str] = []

    # =========================================================================
    # TIER 1: CRITICAL (block startup if any fail)
    # =========================================================================

    # 1. JWT secret must be set, otherwise every token would be forgeable
    if settings.JWT_SECRET == JWT_SECRET_PLACEHOLDER:
        critical_failures.append("JWT_SECRET is placeholder - set the secret shared with the auth service")
        results["jwt_secret"] = False
    else:
        results["jwt_secret"] = True
        logger.info("  [OK] JWT secret configured")

    # 2. Archival job time parses as HH:MM
    if not _JOB_TIME_RE.match(settings.ARCHIVAL_JOB_TIME):
        critical_failures.append(
            f"ARCHIVAL_JOB_TIME must be HH:MM (24h), got {settings.ARCHIVAL_JOB_TIME!r}"
        )
        results["archival_job_time"] = False
    else:
        results["archival_job_time"] = True

    # 3. Redis reachable (presence, pub/sub, rate limiting)
    try:
        from shared.redis_client import get_redis_client, with_timeout

        await with_timeout(get_redis_client().ping())
        results["redis_connection"] = True
        logger.info("  [OK] Redis reachable")
    except Exception as e:
        critical_failures.append(f"Redis connection failed: {e}")
        results["redis_connection"] = False

    # 4. Resend API key
    if settings.RESEND_API_KEY == RESEND_API_KEY_PLACEHOLDER:
        message = "RESEND_API_KEY is placeholder - email digests cannot be delivered"
        if require_email:
            critical_failures.append(message)
        else:
            logger.warning(f"  [WARN] {message} (not required for this service)")
        results["resend_api_key"] = False
    else:
        results["resend_api_key"] = True
        logger.info("  [OK] Resend API key configured")

    # =========================================================================
    # TIER 2: IMPORTANT (warn but allow startup)
    # =========================================================================

    # 5. Database URL format validation
    if not settings.DATABASE_URL.startswith("postgresql+asyncpg://"):
        logger.warning("DATABASE_URL should use asyncpg driver: postgresql+asyncpg://...")
        results["database_url_format"] = False
    else:
        results["database_url_format"] = True

    # 6. Hard delete is irreversible, make it visible in the boot log
    if settings.MESSAGE_HARD_DELETE_AFTER_DAYS > 0:
        logger.warning(
            f"Hard delete enabled: archived messages are removed after "
            f"{settings.MESSAGE_HARD_DELETE_AFTER_DAYS} days"
        )
        results["hard_delete_disabled"] = False
    else:
        results["hard_delete_disabled"] = True

    # =========================================================================
    # Summary and result
    # =========================================================================

    passed = sum(1 for v in results.values() if v)
    total = len(results)
    logger.info(f"Startup validation: {passed}/{total} checks passed")

    if critical_failures:
        logger.critical("=" * 60)
        logger.critical("STARTUP BLOCKED - Critical configuration errors:")
        for i, failure in enumerate(critical_failures, 1):
            logger.critical(f"  {i}. {failure}")
        logger.critical("=" * 60)
        raise StartupValidationError(
            f"Critical startup validation failed ({len(critical_failures)} errors): "
            f"{'; '.join(critical_failures)}"
        )

    return results


async def validate_database_connection() -> bool:
    """
    Validate database connection is working.

    Returns:
        True if database connection successful, False otherwise
    """
    try:
        from database.connection import get_async_session

        async with get_async_session() as session:
            await session.execute(text("SELECT 1"))

        logger.info("  [OK] Database connection successful")
        return True

    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
