"""
Allowed-URL policy.

Patterns have the form ``[scheme]://<service>[.<namespace>]`` where the scheme
and either label may be ``*``. The bare pattern ``*`` allows every endpoint.
Patterns match canonical endpoint URIs with or without a port.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from loguru import logger

from kubebind.core.errors import PolicyError
from kubebind.datastructures.type_aliases import EndpointURI

policy_log = logger

_LABEL_RE = r"[^.:/]+"
_PORT_RE = r"(:\d+)?"


def _label_regex(label: str, pattern: str) -> str:
    if not label:
        raise PolicyError(f"empty host label in allowed url pattern: {pattern!r}")
    if label == "*":
        return _LABEL_RE
    if "*" in label:
        raise PolicyError(f"partial wildcards are not supported: {pattern!r}")
    return re.escape(label)


def convert_allowed_url_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile an allowed-URL pattern into an anchored regex."""
    if not pattern:
        raise PolicyError("allowed url pattern is empty")
    if pattern == "*":
        return re.compile(r"^.*$")

    scheme, sep, host = pattern.partition("://")
    if not sep or not scheme:
        raise PolicyError(
            f"allowed url pattern must have the form <scheme>://<service>.<namespace>: {pattern!r}"
        )

    scheme_re = r"[a-z][a-z0-9+.-]*" if scheme == "*" else re.escape(scheme)

    if host == "*":
        return re.compile(rf"^{scheme_re}://{_LABEL_RE}\.{_LABEL_RE}{_PORT_RE}$")

    labels = host.split(".")
    if len(labels) == 1:
        service_re, namespace_re = _label_regex(labels[0], pattern), _LABEL_RE
    elif len(labels) == 2:
        service_re = _label_regex(labels[0], pattern)
        namespace_re = _label_regex(labels[1], pattern)
    else:
        raise PolicyError(f"too many host labels in allowed url pattern: {pattern!r}")

    return re.compile(rf"^{scheme_re}://{service_re}\.{namespace_re}{_PORT_RE}$")


class AllowedURLPolicy:
    """A set of compiled allowed-URL patterns; any match allows the URI."""

    def __init__(self, patterns: Iterable[str]) -> None:
        self.patterns = list(patterns)
        self._regexes = [convert_allowed_url_to_regex(p) for p in self.patterns]

    def is_allowed(self, endpoint_uri: EndpointURI) -> bool:
        for regex in self._regexes:
            if regex.match(endpoint_uri):
                return True
        policy_log.debug("{} does not match any allowed url pattern", endpoint_uri)
        return False

    def __repr__(self) -> str:
        return f"AllowedURLPolicy({self.patterns!r})"
