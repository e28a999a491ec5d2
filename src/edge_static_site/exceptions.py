class EdgeError(Exception):
    pass


class ConfigurationError(EdgeError):
    pass


class MalformedRequest(EdgeError):
    pass


class MethodNotAllowed(EdgeError):
    def __init__(self, method, allowed):
        super().__init__(f"Method {method!s} is not allowed")
        self.method = method
        self.allowed = allowed


class AccessDenied(EdgeError):
    def __init__(self, identity):
        super().__init__(f"Identity {identity!r} may not read from the origin")
        self.identity = identity


class OriginUnavailable(EdgeError):
    pass


class FallbackDocumentMissing(EdgeError):
    """The configured not-found document is itself absent from the origin.

    This indicates a broken deployment and is never turned into a 404.
    """

    def __init__(self, path):
        super().__init__(f"Fallback document {path!r} does not exist in the origin")
        self.path = path
