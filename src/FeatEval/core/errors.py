"""
Error types raised by the feature evaluation core.

Configuration errors mean the requested evaluation cannot run on the given
data or options. Internal errors mean an invariant of the evaluation itself
was broken and indicate a bug rather than bad input.
"""


class ConfigurationError(ValueError):
    """Invalid options, unsupported mode combination, or data too small for the requested folds"""


class InternalError(RuntimeError):
    """Broken internal invariant (subset counts, tree counts, checkpoint markers)"""


def ensure(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigurationError(message)


def ensure_internal(condition: bool, message: str) -> None:
    if not condition:
        raise InternalError(message)
