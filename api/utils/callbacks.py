"""Helpers for inbound payment callbacks: parameter extraction and IP allowlist."""
from __future__ import annotations

import ipaddress
from typing import Any, Optional

from fastapi import Request


async def read_callback_params(request: Request) -> dict[str, Any]:
    """Merge query string with a form or JSON body.

    Redirect gateways call back with GET query params; IPN style calls may POST
    a form or JSON. Body values win over query values.
    """
    params: dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return params
    content_type = (request.headers.get("content-type") or "").lower()
    if "application/json" in content_type:
        body = await request.json()
        if isinstance(body, dict):
            params.update(body)
    elif "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})
    return params


def ip_allowed(remote_ip: Optional[str], allowlist: Optional[list[str]]) -> bool:
    """Empty allowlist permits everyone; entries are single IPs or CIDRs."""
    if not allowlist:
        return True
    if not remote_ip:
        return False
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            continue
    return False
