from __future__ import annotations

import logging

from runonce.errors import SignalTermination


LOGGER = logging.getLogger("runonce")


def _describe(error: BaseException) -> str:
    parts = [str(getattr(error, "message", None) or error)]
    cause = error.__cause__
    while cause is not None:
        parts.append(f"{cause.__class__.__name__}: {cause}")
        cause = cause.__cause__
    return ": caused by ".join(parts)


def exit_code_for(error: BaseException | None, *, verbose: bool) -> int:
    """Map the outcome of a run to the process exit code, reporting failures."""
    if error is None:
        if verbose:
            LOGGER.info("Process ends normally.")
        return 0
    if isinstance(error, SignalTermination):
        if verbose:
            LOGGER.info("Process ends on %s.", error.message)
        return error.exit_code
    if verbose:
        LOGGER.error("Process ends abnormally. Reason: %s", _describe(error))
    else:
        LOGGER.error("%s", " ".join(str(getattr(error, "message", None) or error).split()))
    return 1
