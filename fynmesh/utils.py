"""Small helpers shared by the kernel modules."""

import inspect
import re
from typing import Any

_CONTAINER_CHARS = re.compile(r"[@\-./]")


def url_join(base_url: str, url_path: str) -> str:
    """Join base and path with exactly one slash between them when neither side has it."""
    fill = "" if url_path.startswith("/") or base_url.endswith("/") else "/"
    return f"{base_url}{fill}{url_path}"


def url_dirname(url: str) -> str:
    """Everything up to and including the last slash: 'http://h/a/dist/x.json' -> 'http://h/a/dist/'."""
    idx = url.rfind("/")
    return url[: idx + 1] if idx >= 0 else ""


def clean_container_name(name: str) -> str:
    """Turn a package name into an identifier: '@scope/my-app.x' -> 'scope_my_app_x'."""
    return _CONTAINER_CHARS.sub("_", name).lstrip("_")


async def maybe_await(value: Any) -> Any:
    """Await value if it is awaitable. Unit and extension hooks may be sync or async."""
    if inspect.isawaitable(value):
        return await value
    return value
