from typing import List, Optional

from fastapi import Request

from rollcall.core.config import settings
from rollcall.core.exceptions import InvalidEmailError


async def get_remote_address(request: Request, default_ip: str = "127.0.0.1", use_cf_connecting_ip: bool = True,
                             other_ip_headers: list = None):
    """
    Retrieves the remote address of the client making the request. By default, it
    returns the IP address contained in the `CF-Connecting-IP` header if present.
    If the `CF-Connecting-IP` header is absent, it falls back to the client's
    host IP. If neither a client nor its host IP can be determined, the address
    defaults to `127.0.0.1`.

    :param other_ip_headers: Additional headers to check for the remote IP address ex ["X-Forwarded-For"].
    :param use_cf_connecting_ip: Whether to use the `CF-Connecting-IP` header if present.
    :param default_ip: Default IP address to use if the client's host IP cannot be determined.
    :param request: The incoming HTTP request.
    :return: The remote IP address as a string.
    """
    if use_cf_connecting_ip:
        if request.headers.get("CF-Connecting-IP"):
            return request.headers.get("CF-Connecting-IP")
    if other_ip_headers:
        for header in other_ip_headers:
            if request.headers.get(header):
                return request.headers.get(header)
    if not request.client or not request.client.host:
        return default_ip
    return request.client.host


def is_email_valid(email: str, allowed_domains: Optional[List[str]] = None, raise_on_invalid: bool = True):
    """
    Checks that an email address belongs to one of the institutional domains.

    An empty domain list accepts any well-formed address. Subdomains of an allowed
    domain are accepted too (`cs.uni.edu` passes for `uni.edu`).

    :param email: The email address to validate.
    :param allowed_domains: Overrides `settings.INSTITUTION_EMAIL_DOMAINS`.
    :param raise_on_invalid: Raises InvalidEmailError if the email is invalid and this is True.
    :return: True if valid, False otherwise (when not raising).
    """
    allowed = settings.INSTITUTION_EMAIL_DOMAINS if allowed_domains is None else allowed_domains
    local, _, domain = (email or "").strip().lower().rpartition("@")
    valid = bool(local) and bool(domain)
    if valid and allowed:
        valid = any(domain == d.lower() or domain.endswith("." + d.lower()) for d in allowed)
    if not valid and raise_on_invalid:
        raise InvalidEmailError(f"Email {email!r} rejected, allowed domains: {', '.join(allowed) or 'any'}")
    return valid
