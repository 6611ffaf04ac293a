"""Single-site HTTP(S) probe with manual redirect following."""

import errno
import hashlib
import logging
import socket
import ssl
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.message import Message
from urllib.parse import urljoin, urlparse

from .models import CheckResult, RedirectHop, SslCertificate

logger = logging.getLogger(__name__)

# Total budget for one probe, shared by every redirect hop.
CHECK_TIMEOUT_SECONDS = 10.0

MAX_REDIRECTS = 5

# The certificate handshake runs after the final response, so it gets at least
# this much time even when the hop budget is almost spent.
CERT_MIN_TIMEOUT_SECONDS = 2.0

USER_AGENT = "SiteWatch/0.1"

ERR_TIMEOUT = "ETIMEDOUT"
ERR_REDIRECT_LOOP = "REDIRECT_LOOP"
ERR_TOO_MANY_REDIRECTS = "TOO_MANY_REDIRECTS"
ERR_INVALID_URL = "INVALID_URL"
ERR_UNKNOWN = "ERROR"
ERR_TLS = "EPROTO"

_GAI_CODES = {getattr(socket, name): name for name in dir(socket) if name.startswith("EAI_")}

_CONNECTION_ERROR_CODES: dict[type[OSError], str] = {
    ConnectionRefusedError: "ECONNREFUSED",
    ConnectionResetError: "ECONNRESET",
    ConnectionAbortedError: "ECONNABORTED",
    BrokenPipeError: "EPIPE",
}


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Redirect handler that hands every 3xx response back to the caller."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


# Opener that never follows redirects; 3xx responses surface as HTTPError.
_opener = urllib.request.build_opener(_NoRedirectHandler())


@dataclass(frozen=True)
class _Response:
    status_code: int
    headers: Message
    body: bytes


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _validate_target(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValueError(f"Invalid URL: {url!r}")


def _fetch(url: str, timeout: float) -> _Response:
    """Perform one GET without following redirects.

    Non-2xx statuses are returned as responses rather than raised.
    """
    request = urllib.request.Request(url, method="GET", headers={"User-Agent": USER_AGENT})
    try:
        with _opener.open(request, timeout=timeout) as response:
            return _Response(response.status, response.headers, response.read())
    except urllib.error.HTTPError as e:
        try:
            body = e.read()
        finally:
            e.close()
        return _Response(e.code, e.headers, body)


def _snapshot_headers(headers: Message) -> dict[str, str]:
    """Lower-case header names and join repeated headers with ", "."""
    snapshot: dict[str, str] = {}
    for key, value in headers.items():
        name = key.lower()
        snapshot[name] = f"{snapshot[name]}, {value}" if name in snapshot else str(value)
    return snapshot


def _describe_error(exc: BaseException, timeout: float) -> tuple[str, str]:
    """Map an exception raised while fetching to (error_code, error_message)."""
    reason = exc.reason if isinstance(exc, urllib.error.URLError) else exc

    if isinstance(reason, ssl.SSLCertVerificationError):
        code = getattr(reason, "reason", None) or "CERTIFICATE_VERIFY_FAILED"
        return code, str(getattr(reason, "verify_message", None) or reason)
    if isinstance(reason, TimeoutError):
        return ERR_TIMEOUT, f"timeout after {int(timeout * 1000)}ms"
    if isinstance(reason, socket.gaierror):
        return _GAI_CODES.get(reason.errno, "EAI_FAIL"), str(reason)
    if isinstance(reason, ssl.SSLError):
        # errno here is an OpenSSL number, not a POSIX one
        return getattr(reason, "reason", None) or ERR_TLS, str(reason)
    if isinstance(reason, OSError):
        if reason.errno in errno.errorcode:
            return errno.errorcode[reason.errno], reason.strerror or str(reason)
        for error_type, code in _CONNECTION_ERROR_CODES.items():
            if isinstance(reason, error_type):
                return code, str(reason) or code
    if isinstance(reason, ValueError):
        return ERR_INVALID_URL, str(reason)
    return ERR_UNKNOWN, str(reason) or type(reason).__name__


def _parse_name(entries: object) -> dict[str, str]:
    """Flatten the nested tuples returned by SSLSocket.getpeercert()."""
    names: dict[str, str] = {}
    if isinstance(entries, tuple):
        for item in entries:
            if isinstance(item, tuple) and len(item) > 0:
                first = item[0]
                if isinstance(first, tuple) and len(first) == 2:
                    names[str(first[0])] = str(first[1])
    return names


def _parse_cert_time(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    return datetime.strptime(value, "%b %d %H:%M:%S %Y %Z").replace(tzinfo=UTC)


def _fingerprint(der: bytes | None) -> str | None:
    if not der:
        return None
    digest = hashlib.sha256(der).hexdigest().upper()
    return ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))


def _parse_certificate(cert: dict, der: bytes | None) -> SslCertificate:
    """Build an SslCertificate from a decoded peer certificate."""
    issuer = _parse_name(cert.get("issuer", ()))
    subject = _parse_name(cert.get("subject", ()))
    return SslCertificate(
        issuer=issuer.get("organizationName") or issuer.get("commonName"),
        subject=subject.get("commonName"),
        valid_from=_parse_cert_time(cert.get("notBefore")),
        valid_to=_parse_cert_time(cert.get("notAfter")),
        serial_number=cert.get("serialNumber"),
        fingerprint256=_fingerprint(der),
    )


def _fetch_unverified_der(hostname: str, port: int, timeout: float) -> bytes | None:
    """Fetch the raw peer certificate without verifying it."""
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    with socket.create_connection((hostname, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=hostname) as ssl_sock:
            return ssl_sock.getpeercert(binary_form=True)


def _get_ssl_cert_info(url: str, timeout: float) -> tuple[SslCertificate | None, bool | None]:
    """Capture the peer certificate of an HTTPS URL.

    Uses a separate TLS connection, since urllib does not expose the peer
    certificate of the response. A certificate that fails verification is
    fetched again without verification so that its fingerprint is still
    recorded; the decoded fields are only available for verified certificates.

    Args:
        url: The HTTPS URL whose certificate to read.
        timeout: Connection timeout in seconds.

    Returns:
        Tuple of (certificate, is_valid), or (None, None) if nothing could be read.
    """
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
        port = parsed.port or 443
        if parsed.scheme != "https" or not hostname:
            return None, None

        context = ssl.create_default_context()
        try:
            with socket.create_connection((hostname, port), timeout=timeout) as sock:
                with context.wrap_socket(sock, server_hostname=hostname) as ssl_sock:
                    cert = ssl_sock.getpeercert()
                    der = ssl_sock.getpeercert(binary_form=True)
        except ssl.SSLCertVerificationError as e:
            logger.debug("Certificate for %s failed verification: %s", hostname, e)
            der = _fetch_unverified_der(hostname, port, timeout)
            if not der:
                return None, None
            return SslCertificate(fingerprint256=_fingerprint(der)), False

        if not cert:
            return None, None
        return _parse_certificate(cert, der), True

    except Exception as e:
        logger.debug("Certificate capture failed for %s: %s", url, e)
        return None, None


def _failure(
    checked_at: datetime,
    start: float,
    error_code: str,
    error_message: str,
    chain: list[RedirectHop],
) -> CheckResult:
    return CheckResult(
        status_code=None,
        response_time_ms=int((time.monotonic() - start) * 1000),
        is_up=False,
        error_message=error_message,
        error_code=error_code,
        checked_at=checked_at,
        redirect_chain=list(chain),
    )


def probe(
    url: str,
    timeout: float = CHECK_TIMEOUT_SECONDS,
    clock: Callable[[], datetime] = _utcnow,
) -> CheckResult:
    """Probe a URL once, following redirects, and describe the outcome.

    Never raises: timeouts, redirect loops, transport errors and malformed
    URLs all come back as a failed CheckResult with ``error_code`` set.

    Args:
        url: The URL to probe.
        timeout: Total budget in seconds shared by every redirect hop.
        clock: Source of the ``checked_at`` timestamp.

    Returns:
        CheckResult for the final response or the terminal failure.
    """
    checked_at = clock()
    start = time.monotonic()
    deadline = start + timeout
    timeout_message = f"timeout after {int(timeout * 1000)}ms"

    chain: list[RedirectHop] = []
    visited = {url}
    current = url

    try:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return _failure(checked_at, start, ERR_TIMEOUT, timeout_message, chain)

            _validate_target(current)
            response = _fetch(current, remaining)

            location = response.headers.get("Location")
            if not (300 <= response.status_code < 400) or not location:
                break

            chain.append(RedirectHop(url=current, status_code=response.status_code))
            next_url = urljoin(current, location)

            if next_url in visited:
                logger.debug("Redirect loop for %s at %s", url, next_url)
                return _failure(checked_at, start, ERR_REDIRECT_LOOP, f"redirect loop detected: {next_url}", chain)
            if len(chain) > MAX_REDIRECTS:
                return _failure(
                    checked_at, start, ERR_TOO_MANY_REDIRECTS, f"exceeded {MAX_REDIRECTS} redirects", chain
                )

            visited.add(next_url)
            current = next_url

    except Exception as e:
        error_code, error_message = _describe_error(e, timeout)
        logger.debug("Probe of %s failed: %s (%s)", url, error_message, error_code)
        result = _failure(checked_at, start, error_code, error_message, chain)

        reason = e.reason if isinstance(e, urllib.error.URLError) else e
        if isinstance(reason, ssl.SSLCertVerificationError):
            cert, ssl_valid = _get_ssl_cert_info(current, CERT_MIN_TIMEOUT_SECONDS)
            if cert is not None:
                return CheckResult(
                    status_code=None,
                    response_time_ms=result.response_time_ms,
                    is_up=False,
                    error_message=error_message,
                    error_code=error_code,
                    checked_at=checked_at,
                    ssl_valid=ssl_valid,
                    ssl_expiry=cert.valid_to,
                    ssl_certificate=cert,
                    redirect_chain=result.redirect_chain,
                )
        return result

    response_time_ms = int((time.monotonic() - start) * 1000)
    status_code = response.status_code

    ssl_certificate: SslCertificate | None = None
    ssl_valid: bool | None = None
    if urlparse(current).scheme == "https":
        cert_timeout = max(deadline - time.monotonic(), CERT_MIN_TIMEOUT_SECONDS)
        ssl_certificate, ssl_valid = _get_ssl_cert_info(current, cert_timeout)

    return CheckResult(
        status_code=status_code,
        response_time_ms=response_time_ms,
        is_up=status_code < 500,
        error_message=None,
        checked_at=checked_at,
        headers_snapshot=_snapshot_headers(response.headers),
        body_hash=hashlib.sha256(response.body).hexdigest(),
        ssl_valid=ssl_valid,
        ssl_expiry=ssl_certificate.valid_to if ssl_certificate else None,
        ssl_certificate=ssl_certificate,
        redirect_chain=chain,
    )
