class ExternalServiceError(Exception):
    """An upstream service (Open Library, OpenRouter) could not be reached."""


class RateLimitExceeded(ExternalServiceError):
    pass
