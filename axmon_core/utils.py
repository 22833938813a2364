import uuid
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns of the store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def business_key(prefix: str, moment: datetime, suffix: str = None) -> str:
    """
    Build an externally visible identifier such as ALERT_20251109_144529_1a2b3c4d.

    Args:
        prefix: Key prefix (ALERT, CORR, RULE, EXEC)
        moment: UTC timestamp embedded in the key
        suffix: Trailing discriminator; defaults to 8 random hex characters
    """
    if suffix is None:
        suffix = uuid.uuid4().hex[:8]
    return f"{prefix}_{moment:%Y%m%d_%H%M%S}_{suffix}"


def print_banner(service_name: str, version: str = "1.0.0"):
    """
    Print the startup banner.

    Args:
        service_name: Name of the service starting up
        version: Version number of the service (default: "1.0.0")
    """
    print("=" * 80)
    print("  AX MONITORING - Alerting & Automated Remediation Engine")
    print("=" * 80)
    print(f"  Service:        {service_name}")
    print(f"  Version:        {version}")
    print(f"  Started:        {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("-" * 80)
    print("  Components:     Alert Lifecycle | Alert Correlation | Remediation Engine")
    print("=" * 80)
    print()


def parse_uuid(value) -> Optional[uuid.UUID]:
    """Accept a UUID or its string form; None when the value is not a UUID."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None
