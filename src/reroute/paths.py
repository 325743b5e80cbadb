"""Path canonicalization shared by request matching and rule loading."""

ROOT = "/"


def normalize(path: str) -> str:
    """Return the canonical form of a URL path.

    Trailing slashes are stripped and a leading slash is ensured, so
    ``/foo/``, ``/foo`` and ``foo`` all become ``/foo``. The root (and the
    empty path) is always ``/``.
    """
    if not path:
        return ROOT
    path = path.rstrip("/")
    if not path:
        return ROOT
    if not path.startswith("/"):
        path = f"/{path}"
    return path
