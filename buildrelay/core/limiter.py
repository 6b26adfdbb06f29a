"""SlowAPI rate limiter singleton.

Uploads are keyed on the target repository rather than the client IP:
CI runners share egress addresses, so an IP key would throttle unrelated
repositories against each other.

Usage in route handlers:
    @router.put("/")
    @limiter.limit(lambda: get_settings().upload_rate_limit)
    async def handler(request: Request, ...):
        ...
"""

from slowapi import Limiter


def _repository_key(request) -> str:
    """Key function: rate-limit per ``owner/repo`` upload header pair.

    Falls back to client IP when the headers are absent.
    """
    owner = request.headers.get("owner")
    repo = request.headers.get("repo")
    if owner and repo:
        return f"{owner}/{repo}"
    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=_repository_key, default_limits=[])
