"""Exceptions raised by the route planning engine."""


class RoutePlannerError(Exception):
    """Base exception for the application."""
    pass


class InvalidInputError(RoutePlannerError, ValueError):
    """Raised for malformed coordinates, bad duration buckets or unknown vehicles."""
    pass


class NotFoundError(RoutePlannerError):
    """Raised when a route, candidate or cache entry does not exist."""
    pass


class ConflictError(RoutePlannerError):
    """Raised when the caller acted on stale state: lost claim race, out of sequence stop, terminal route."""
    pass


class UnavailableError(RoutePlannerError):
    """Raised when the travel estimator or persistence cannot be reached. Retryable."""
    pass
