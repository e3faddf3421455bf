"""Error taxonomy for the localization pipeline."""


class LocalizationError(Exception):
    """Base class for every error raised by camloc."""


class ConfigurationError(LocalizationError):
    """Invalid parameter combination, fatal at startup."""


class MapFormatError(LocalizationError):
    """A map, calibration or result log could not be read."""


class RetrievalUnavailable(LocalizationError):
    """The retrieval index is missing, empty or corrupt."""


class InsufficientCorrespondences(LocalizationError):
    """Fewer correspondences than the minimal sample of the model."""

    def __init__(self, available: int, required: int) -> None:
        super().__init__(
            f"{available} correspondences available, at least {required} required"
        )
        self.available = available
        self.required = required


class EstimationFailed(LocalizationError):
    """No hypothesis reached the minimum inlier floor."""


class RefinementDidNotConverge(LocalizationError):
    """The sequence refinement stopped without converging."""


class GeometryIndeterminate(LocalizationError):
    """The half-space feasibility problem could not be decided."""
