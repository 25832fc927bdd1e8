"""
Configuration validation for deployment safety.

- Range checks for numeric parameters
- Required remote names
- Warnings for configurations that are valid but likely unintended
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Tuple

from payrecon.core.models import ViewPrecedence

logger = logging.getLogger("payrecon")


class ValidationSeverity(Enum):
    ERROR = auto()    # Blocks startup
    WARNING = auto()  # Logs warning but allows startup
    INFO = auto()


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def has_errors(self) -> bool:
        return any(i.severity == ValidationSeverity.ERROR for i in self.issues)

    def has_warnings(self) -> bool:
        return any(i.severity == ValidationSeverity.WARNING for i in self.issues)

    def get_errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    def get_warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]


class ConfigValidator:
    """
    Validates a Settings instance.

    Checks:
    - Required fields are present
    - Numeric values are within sane ranges
    - Risky but valid combinations
    """

    # (min, max)
    NUMERIC_RANGES: Dict[str, Tuple[float, float]] = {
        "http_timeout": (0.5, 120.0),
        "ledger_lookback": (1, 500),
        "reconcile_delay_sec": (0.0, 300.0),
        "reconcile_followup_attempts": (1, 10),
        "reconcile_backoff": (1.0, 10.0),
        "poll_interval_sec": (0.0, 3600.0),
        "health_interval_sec": (1.0, 86400.0),
        "rpc_error_threshold": (0, 1000),
        "rpc_cooldown_sec": (0.0, 3600.0),
        "metrics_port": (0, 65535),
    }

    REQUIRED_STRINGS: List[str] = [
        "base_url",
        "status_rpc",
        "orders_table",
        "ledger_table",
        "reconcile_function",
    ]

    def __init__(self) -> None:
        self._custom_validators: List[Callable[[Any], List[ValidationIssue]]] = []

    def register_validator(self, validator: Callable[[Any], List[ValidationIssue]]) -> None:
        self._custom_validators.append(validator)

    def validate(self, cfg) -> ValidationResult:
        issues: List[ValidationIssue] = []
        issues.extend(self._validate_required_strings(cfg))
        issues.extend(self._validate_numeric_ranges(cfg))
        issues.extend(self._check_risky_configs(cfg))

        for validator in self._custom_validators:
            try:
                custom_issues = validator(cfg)
                if custom_issues:
                    issues.extend(custom_issues)
            except Exception as e:
                logger.warning(f"Custom validator error: {e}")

        has_errors = any(i.severity == ValidationSeverity.ERROR for i in issues)
        return ValidationResult(valid=not has_errors, issues=issues)

    def _validate_required_strings(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name in self.REQUIRED_STRINGS:
            value = getattr(cfg, field_name, None)
            if not value or (isinstance(value, str) and not value.strip()):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"Required field '{field_name}' is missing or empty",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
        return issues

    def _validate_numeric_ranges(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name, (min_val, max_val) in self.NUMERIC_RANGES.items():
            value = getattr(cfg, field_name, None)
            if value is None:
                continue
            try:
                num_value = float(value)
            except (TypeError, ValueError):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' has invalid numeric value: {value}",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
                continue
            if num_value < min_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is below minimum {min_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at least {min_val}",
                ))
            elif num_value > max_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is above maximum {max_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at most {max_val}",
                ))
        return issues

    def _check_risky_configs(self, cfg) -> List[ValidationIssue]:
        issues = []

        if not getattr(cfg, "api_key", None):
            issues.append(ValidationIssue(
                field="api_key",
                message="No API key configured; requests go out unauthenticated",
                severity=ValidationSeverity.WARNING,
                suggestion="Set PAYRECON_API_KEY",
            ))

        poll = getattr(cfg, "poll_interval_sec", 30.0)
        if 0 < poll < 5:
            issues.append(ValidationIssue(
                field="poll_interval_sec",
                message=f"Poll interval {poll}s will put heavy load on the data API",
                severity=ValidationSeverity.WARNING,
                value=poll,
            ))

        if poll == 0 and not getattr(cfg, "enable_realtime", True):
            issues.append(ValidationIssue(
                field="enable_realtime",
                message="Polling and realtime are both disabled; views refresh only on demand",
                severity=ValidationSeverity.WARNING,
            ))

        precedence = getattr(cfg, "view_precedence", ViewPrecedence.VIEW_FIRST)
        if precedence != ViewPrecedence.RAW_ONLY and not getattr(cfg, "combined_view", None):
            issues.append(ValidationIssue(
                field="combined_view",
                message=f"view_precedence={precedence.value} but no combined view is configured",
                severity=ValidationSeverity.INFO,
            ))
        elif precedence == ViewPrecedence.CROSS_CHECK:
            issues.append(ValidationIssue(
                field="view_precedence",
                message="cross_check reads both the view and the raw tables on every fallback",
                severity=ValidationSeverity.INFO,
            ))

        if not getattr(cfg, "auto_reconcile", True):
            issues.append(ValidationIssue(
                field="auto_reconcile",
                message="Auto-reconcile disabled; drifted orders stay inconsistent until repaired manually",
                severity=ValidationSeverity.WARNING,
            ))

        return issues


def validate_config(cfg) -> ValidationResult:
    return ConfigValidator().validate(cfg)


def validate_and_log(cfg, logger_instance=None) -> bool:
    """
    Validate config and log all issues.

    Returns:
        True if config is valid (no errors), False otherwise
    """
    log = logger_instance or logger
    result = validate_config(cfg)

    for issue in result.get_errors():
        msg = f"CONFIG ERROR: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.error(msg)

    for issue in result.get_warnings():
        msg = f"CONFIG WARNING: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.warning(msg)

    if result.valid:
        log.info("Configuration validation passed")
    else:
        log.error(f"Configuration validation failed with {len(result.get_errors())} error(s)")

    return result.valid
