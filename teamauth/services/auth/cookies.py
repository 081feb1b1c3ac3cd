from __future__ import annotations

from dataclasses import dataclass
import ipaddress

from teamauth.core.config import Settings


SSO_MODE_SHARED_COOKIE = "shared_cookie"
SSO_MODE_REDIRECT_EXCHANGE = "redirect_exchange"
HOST_ONLY_OVERRIDE = "host"


@dataclass(frozen=True)
class CookieDomain:
    host: str
    # None means host-only: no Domain attribute is emitted.
    domain: str | None

    @property
    def shared(self) -> bool:
        return self.domain is not None

    @property
    def audience(self) -> str:
        # Tokens are valid for the cookie domain they were minted under.
        return self.domain or self.host

    @property
    def sso_mode(self) -> str:
        return SSO_MODE_SHARED_COOKIE if self.shared else SSO_MODE_REDIRECT_EXCHANGE


def normalize_host(request_host: str) -> str:
    # Lower-case and drop any port, IPv6 brackets and trailing dot.
    host = (request_host or "").strip().lower()
    if host.startswith("["):
        return host[1:].split("]", 1)[0]
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _under(host: str, domain: str) -> bool:
    domain = domain.strip().lower().strip(".")
    return bool(domain) and (host == domain or host.endswith(f".{domain}"))


def shared_cookie_domain(
    request_host: str,
    *,
    apex_domain: str | None,
    public_suffixes: tuple[str, ...] | list[str],
    override: str | None = None,
) -> CookieDomain:
    """Decide whether session cookies for ``request_host`` may span subdomains.

    Order: IP literals and single-label hosts stay host-only; an operator
    override wins next; anything under a public suffix is host-only because
    browsers drop a Domain attribute naming a PSL entry; hosts under the
    apex share the apex; everything else is host-only.
    """
    host = normalize_host(request_host)
    if not host or _is_ip(host) or "." not in host:
        return CookieDomain(host=host, domain=None)
    if override:
        if override.strip().lower() == HOST_ONLY_OVERRIDE:
            return CookieDomain(host=host, domain=None)
        if _under(host, override):
            return CookieDomain(host=host, domain=override.strip().lower().strip("."))
    for suffix in public_suffixes:
        if _under(host, suffix):
            return CookieDomain(host=host, domain=None)
    if apex_domain and _under(host, apex_domain):
        return CookieDomain(host=host, domain=apex_domain.strip().lower().strip("."))
    return CookieDomain(host=host, domain=None)


class CookieDomainResolver:
    """Binds ``shared_cookie_domain`` to one immutable configuration."""

    def __init__(self, settings: Settings) -> None:
        self._apex = settings.cookie_apex_domain
        self._suffixes = tuple(settings.cookie_public_suffixes)
        self._override = settings.cookie_domain_override

    def resolve(self, request_host: str) -> CookieDomain:
        return shared_cookie_domain(
            request_host,
            apex_domain=self._apex,
            public_suffixes=self._suffixes,
            override=self._override,
        )

    def audience_for(self, request_host: str) -> str:
        return self.resolve(request_host).audience
