class RateLimitError(RuntimeError):
    """Provider quota or rate limit exhausted for every usable credential/model pair."""


class ModelAccessError(RuntimeError):
    """Model is not reachable with the given credential (403/404)."""


class SessionNotFoundError(KeyError):
    pass
