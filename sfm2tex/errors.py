"""
Exception hierarchy for sfm2tex.

Every fatal condition raised by the pipeline derives from TexturingError so
the CLI can report it with a single diagnostic line and a non-zero exit code.
Degenerate geometry (empty meshes, zero-length thresholds) is not an error
and has no exception class: the stages treat it as a no-op.
"""

from typing import Optional


class TexturingError(Exception):
    """Base class for all sfm2tex failures."""


class ConfigurationError(TexturingError, ValueError):
    """Missing or unparseable option value."""


class LoadError(TexturingError):
    """Scene or mesh file could not be read or is malformed."""


class ResolutionError(TexturingError, KeyError):
    """
    A landmark observation references a view that is not part of the
    multi-view parameter set.
    """

    def __init__(self, view_id: int, landmark_id: Optional[int] = None):
        self.view_id = view_id
        self.landmark_id = landmark_id
        if landmark_id is None:
            message = f"View {view_id} is not a valid view of the scene"
        else:
            message = (
                f"Landmark {landmark_id} is observed by view {view_id}, "
                f"which is not a valid view of the scene"
            )
        super().__init__(message)

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0])


class StageFailure(TexturingError):
    """
    An external stage (unwrap, subdivision, export, texture generation)
    failed. The original exception is chained as __cause__.
    """

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"{stage} failed: {message}")
