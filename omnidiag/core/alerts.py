import logging
from typing import Optional, Union

from omnidiag.core.schema import Severity

logger = logging.getLogger("omnidiag.core.alerts")

DISABLED_LABELS = {"none", "disabled", "off", ""}


def parse_threshold(value: Union[str, Severity, None]) -> Optional[Severity]:
    """
    Normalizes an alert threshold setting.
    Returns None when alerting is disabled.
    """
    if value is None or isinstance(value, Severity):
        return value
    text = str(value).strip()
    if text.lower() in DISABLED_LABELS:
        return None
    try:
        return Severity(text.capitalize())
    except ValueError as e:
        raise ValueError(
            f"Unknown alert threshold '{value}'. Use one of: None, {', '.join(s.value for s in Severity)}"
        ) from e


def evaluate_alert(severity: Severity, threshold: Optional[Severity]) -> Optional[str]:
    """Returns the alert message when severity meets or exceeds the threshold."""
    if threshold is None:
        return None
    if severity.rank < threshold.rank:
        return None
    logger.info(f"Alert raised: severity {severity.value} >= threshold {threshold.value}")
    return (
        f'Proactive Alert: The detected risk level is "{severity.value}", '
        f'which meets or exceeds your threshold of "{threshold.value}".'
    )
