#errors.py
"""
Exceptions and warnings raised by the recognizer.
Validity failures (NaN/Inf weights) are not exceptions, see RunOutcome in recognizer_app.py.
"""


class RecognizerError(Exception):
    """Base class for all recognizer errors."""


class OptimizerStepError(RecognizerError):
    """
    An optimizer update was applied out of order, skipped or duplicated.
    Fatal: the parameter store can no longer be trusted, never retry.
    """


class PersistenceError(RecognizerError):
    """The weights container could be decompressed but its content is malformed."""


class DatasetError(RecognizerError):
    """The dataset buffers are unusable: wrong prefix, truncated images or unknown source."""


class StaleGraphWarning(UserWarning):
    """A compute graph was executed with cached weights older than its parameter stores."""
