"""Exception hierarchy shared by the mutation, undo and invoice layers.

The calendar engine and the billing aggregator never raise these; they
degrade to empty projections instead.
"""


class MilkroundError(Exception):
    """Base class for domain errors surfaced to the caller."""


class ValidationError(MilkroundError):
    """Malformed input, or a mutation attempted against a confirmed month."""


class UnsupportedActionError(ValidationError):
    """An undo entry carries an action type or payload we cannot replay."""


class ConflictError(MilkroundError):
    """The request contradicts existing data (e.g. adding an already scheduled product)."""


class NotFoundError(MilkroundError):
    """A referenced customer, record or master entity does not exist."""


class IntegrityError(MilkroundError):
    """An inverse could not be applied because referenced data is gone."""
