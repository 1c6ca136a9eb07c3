"""
Exceptions raised by the pricing core.
The synchronous estimation path turns these into result objects at the
PricingService boundary; training errors travel on the TrainingEvent.
"""


class PricingError(Exception):
    pass


class UnresolvableCategoryError(PricingError):
    """A mandatory categorical value matched nothing in its vocabulary."""

    def __init__(self, column, suggestions):
        self.column = column
        self.suggestions = list(suggestions)
        super().__init__(
            f"Unknown value for {column}. No good match found. "
            f"Top suggestions: {' | '.join(self.suggestions)}"
        )


class GeocodingError(PricingError):
    pass


class NoModelAvailableError(PricingError):
    pass


class MissingColumnsError(PricingError):
    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(f"Required columns missing in dataset: {', '.join(self.missing)}")


class ArtifactError(PricingError):
    """Persisted artifact exists but does not have the expected shape."""


class InvalidVolumeError(PricingError):
    pass


class TrainingCancelled(PricingError):
    pass
