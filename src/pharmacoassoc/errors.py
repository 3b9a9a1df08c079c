"""Exception types raised by the drug-response association pipeline."""


class PharmacoAssocError(Exception):
    """Base class for all pipeline errors."""


class AlignmentError(PharmacoAssocError, ValueError):
    """Sample identifiers of a feature matrix and a response vector do not match."""


class DegenerateFeatureError(PharmacoAssocError):
    """A feature cannot be regressed on (zero variance or too few samples)."""

    def __init__(self, feature_id: str, reason: str = "zero variance across samples"):
        self.feature_id = feature_id
        self.reason = reason
        super().__init__(f"Feature {feature_id!r} is degenerate: {reason}")


class EmptyUniverseError(PharmacoAssocError):
    """None of the query features belong to the reference-set universe."""


class ExternalToolError(PharmacoAssocError, RuntimeError):
    """An external command (activity inference, network solver) failed."""
