import ipaddress
import logging
import re
from typing import List, Optional

from django.conf import settings
from django.http import HttpRequest, JsonResponse

logger = logging.getLogger(__name__)


def _setting_list(key: str) -> List[str]:
    value = getattr(settings, key, "") or ""
    if isinstance(value, str):
        value = value.split(",")
    return [item.strip() for item in value if item and item.strip()]


def client_ip(request: HttpRequest) -> str:
    """Caller address; the forwarded header is honoured only behind a trusted proxy."""
    if getattr(settings, "WEBHOOK_TRUST_FORWARDED_FOR", False):
        forwarded_for = request.META.get("HTTP_X_FORWARDED_FOR", "")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        real_ip = request.META.get("HTTP_X_REAL_IP", "")
        if real_ip:
            return real_ip.strip()
    return request.META.get("REMOTE_ADDR", "")


def ip_allowed(ip: str, allowed: List[str]) -> bool:
    """
    Match ``ip`` against exact addresses, CIDR networks (``41.90.0.0/16``)
    and wildcard patterns (``41.90.*.*`` or ``41.90.x.x``).
    """
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    if getattr(address, "ipv4_mapped", None):
        address = address.ipv4_mapped

    for entry in allowed:
        if "*" in entry or "x" in entry:
            pattern = re.escape(entry).replace(r"\*", r"\d+").replace("x", r"\d+")
            if re.fullmatch(pattern, str(address)):
                return True
            continue
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning("Ignoring malformed webhook allow-list entry %r", entry)
    return False


def reject_untrusted_source(request: HttpRequest, allow_list_setting: str) -> Optional[JsonResponse]:
    """
    Return an error response when the caller is not on the allow-list.

    An empty allow-list blocks every call with 503 when
    ``WEBHOOK_IP_ALLOWLIST_REQUIRED`` is on, and is let through otherwise.
    """
    ip = client_ip(request)
    allowed = _setting_list(allow_list_setting)
    if not allowed:
        if getattr(settings, "WEBHOOK_IP_ALLOWLIST_REQUIRED", False):
            logger.error("%s is not configured; refusing webhook from %s", allow_list_setting, ip)
            return JsonResponse({"error": "Webhook security not configured"}, status=503)
        logger.warning("%s is not configured; accepting webhook from %s", allow_list_setting, ip)
        return None
    if not ip_allowed(ip, allowed):
        logger.error("Rejected webhook from unlisted IP %s (%s)", ip, allow_list_setting)
        return JsonResponse({"error": "Forbidden"}, status=403)
    return None
