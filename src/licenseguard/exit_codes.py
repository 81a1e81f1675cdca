"""Process exit codes.

Process supervisors should not restart the service after
LICENSE_MISSING, LICENSE_EXPIRED or INCONSISTENT_STATE until a new
license has been installed.  RETRYABLE_FAILURE is a transient failure
and may be restarted normally.
"""

from __future__ import annotations

from licenseguard.errors import ValidationError

# Success
SUCCESS = 0

# No license is installed
LICENSE_MISSING = 3

# The installed license has expired
LICENSE_EXPIRED = 4

# Stored license was removed and its replacement could not be written
INCONSISTENT_STATE = 5

# The license was rejected (bad signature, wrong subject, malformed, ...)
VALIDATION_FAILED = 6

# Cluster API or secret store unavailable
RETRYABLE_FAILURE = 7

# Codes after which the process must not be auto-restarted.
NO_RESTART_CODES: frozenset[int] = frozenset({LICENSE_MISSING, LICENSE_EXPIRED, INCONSISTENT_STATE})


def exit_code_for(error: ValidationError) -> int:
    """Map a validation failure to a CLI exit code."""
    if error.fatal:
        return INCONSISTENT_STATE
    if error.retryable:
        return RETRYABLE_FAILURE
    return VALIDATION_FAILED
