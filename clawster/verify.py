"""Post-deploy checks: DNS for custom domains and HTTP reachability."""

import dns.exception
import dns.resolver
import httpx

from .utils import log, warn


def resolve_dns_a(domain: str, nameserver: str = "8.8.8.8") -> str | None:
    """Resolve domain to IPv4 address.

    :param nameserver: DNS nameserver IP (default: 8.8.8.8)
    :return: First A record IP or None
    """
    try:
        resolver = dns.resolver.Resolver()
        resolver.nameservers = [nameserver]
        answer = resolver.resolve(domain, "A")
        return str(answer[0]) if answer else None
    except dns.exception.DNSException:
        return None


def check_http(url: str, timeout: float = 5) -> tuple[int | None, str]:
    """:return: (status_code, status_line) or (None, error_message)"""
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=False)
    except httpx.HTTPError as e:
        return None, str(e)
    return response.status_code, f"{response.http_version} {response.status_code} {response.reason_phrase}"


def verify_endpoint(host: str, *, instance_ip: str | None = None, domain: str | None = None) -> list[str]:
    """Check that a bot's public endpoint answers.

    Caddy answers the gateway's websocket upgrade path with HTTP, so any
    HTTP status counts as reachable; only connection failures are issues.

    :param host: Host to request over HTTP
    :param instance_ip: Public IP the domain should point at
    :param domain: Custom domain fronting the instance, if any
    :return: List of problems found, empty when healthy
    """
    issues = []

    if domain and instance_ip:
        resolved = resolve_dns_a(domain)
        if resolved == instance_ip:
            log(f"[OK] DNS: '{domain}' -> '{resolved}'")
        elif resolved:
            warn(f"[FAIL] DNS: '{domain}' -> '{resolved}' (expected '{instance_ip}')")
            issues.append(f"DNS for '{domain}' points to '{resolved}', not '{instance_ip}'")
        else:
            warn(f"[FAIL] DNS: '{domain}' has no A record")
            issues.append(f"DNS for '{domain}' does not resolve")

    status_code, detail = check_http(f"http://{host}/")
    if status_code is None:
        warn(f"[FAIL] HTTP: {detail}")
        issues.append(f"HTTP request to '{host}' failed: {detail}")
    else:
        log(f"[OK] HTTP: {detail}")

    return issues
