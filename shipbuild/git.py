"""Validation that a source repository URL points to a reachable repository."""

from __future__ import annotations

import re
import urllib.error
import urllib.request
from dataclasses import dataclass
from urllib.parse import urlsplit

_HTTPS = "https"
_HTTP = "http"
_FILE = "file"
_SSH = "ssh"

_SCHEME_RE = re.compile(r"^[^:]+://")
_SCP_RE = re.compile(
    r"^(?:(?P<user>[^@]+)@)?(?P<host>[^:\s]+):"
    r"(?:(?P<port>[0-9]{1,5})(?:/|:))?(?P<path>[^\\].*/[^\\].*)$"
)
_DEFAULT_PORTS = {_HTTP: 80, _HTTPS: 443, _SSH: 22, "git": 9418}


class GitValidationError(Exception):
    """Raised when a repository URL is invalid or cannot be reached."""


class AuthenticationRequired(GitValidationError):
    """Raised when the remote demands credentials."""


@dataclass(frozen=True)
class Endpoint:
    """A parsed repository location."""

    protocol: str
    host: str = ""
    port: int = 0
    path: str = ""
    user: str = ""


def parse_endpoint(url: str) -> Endpoint:
    """Parse a URL, an scp-like address or a local path into an endpoint."""
    has_scheme = bool(_SCHEME_RE.match(url))
    if not has_scheme:
        scp = _SCP_RE.match(url)
        if scp:
            port = int(scp["port"]) if scp["port"] else _DEFAULT_PORTS[_SSH]
            return Endpoint(
                protocol=_SSH,
                host=scp["host"],
                port=port,
                path=scp["path"],
                user=scp["user"] or "",
            )
        return Endpoint(protocol=_FILE, path=url)

    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as exc:
        raise GitValidationError(str(exc)) from exc
    if not parts.scheme:
        raise GitValidationError(f"invalid endpoint: {url}")
    protocol = parts.scheme.lower()
    return Endpoint(
        protocol=protocol,
        host=parts.hostname or "",
        port=port if port is not None else _DEFAULT_PORTS.get(protocol, 0),
        path=parts.path,
        user=parts.username or "",
    )


def _pkt_lines(data: bytes):
    """Yield the payload of each pkt-line; ``None`` stands for a flush packet."""
    offset = 0
    while offset < len(data):
        header = data[offset : offset + 4]
        try:
            length = int(header, 16)
        except ValueError as exc:
            raise GitValidationError("invalid pkt-line length") from exc
        if length == 0:
            yield None
            offset += 4
            continue
        if length < 4 or offset + length > len(data):
            raise GitValidationError("invalid pkt-line length")
        yield data[offset + 4 : offset + length]
        offset += length


def _parse_advertisement(data: bytes) -> dict[str, str]:
    lines = list(_pkt_lines(data))
    if lines and lines[0] is not None and lines[0].startswith(b"# service="):
        lines = lines[1:]
        if lines and lines[0] is None:
            lines = lines[1:]

    refs: dict[str, str] = {}
    for line in lines:
        if line is None:
            break
        text = line.rstrip(b"\n").split(b"\0", 1)[0].decode("utf-8", "replace")
        sha, _, ref = text.partition(" ")
        if not ref or ref == "capabilities^{}":
            continue
        refs[ref] = sha
    if not refs:
        raise GitValidationError("remote repository is empty")
    return refs


def list_remote_refs(url: str, timeout: float = 30.0) -> dict[str, str]:
    """Return the references advertised by an HTTP(S) remote, name to hash."""
    protocol = parse_endpoint(url).protocol
    if protocol not in (_HTTP, _HTTPS):
        raise GitValidationError(f"unsupported protocol {protocol}")

    discovery = url.rstrip("/") + "/info/refs?service=git-upload-pack"
    request = urllib.request.Request(discovery, headers={"User-Agent": "git/1.0"})
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            body = response.read()
    except urllib.error.HTTPError as exc:
        if exc.code == 401:
            raise AuthenticationRequired("authentication required") from exc
        if exc.code == 403:
            raise GitValidationError("authorization failed") from exc
        if exc.code == 404:
            raise GitValidationError("repository not found") from exc
        raise GitValidationError(f"unexpected client error: {exc.code}") from exc
    except (urllib.error.URLError, OSError) as exc:
        raise GitValidationError(str(exc)) from exc
    return _parse_advertisement(body)


def validate_git_url_exists(url_path: str, timeout: float = 30.0) -> None:
    """Raise :class:`GitValidationError` unless the source URL looks usable."""
    protocol = parse_endpoint(url_path).protocol

    if protocol in (_HTTPS, _HTTP):
        try:
            list_remote_refs(url_path, timeout)
        except AuthenticationRequired as exc:
            # Public hosts answer unknown repositories with an auth challenge.
            raise GitValidationError("remote repository unreachable") from exc
    elif protocol == _FILE:
        raise GitValidationError("invalid source url")
    elif protocol == _SSH:
        raise GitValidationError("the source url requires authentication")