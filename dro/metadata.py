from __future__ import annotations

import ipaddress

import requests


IMDS_BASE = "http://169.254.169.254/latest"


def discover_public_ip(base_url: str = IMDS_BASE, timeout_s: float = 2.0) -> str | None:
    """Ask the instance metadata service (IMDSv2) for the public IPv4.

    Returns None off-cloud or when the instance has no public address.
    """
    try:
        token = requests.put(
            f"{base_url}/api/token",
            headers={"X-aws-ec2-metadata-token-ttl-seconds": "60"},
            timeout=timeout_s,
        )
        headers = {"X-aws-ec2-metadata-token": token.text} if token.status_code == 200 else {}
        r = requests.get(f"{base_url}/meta-data/public-ipv4", headers=headers, timeout=timeout_s)
    except requests.exceptions.RequestException:
        return None
    if r.status_code != 200:
        return None
    candidate = r.text.strip()
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return None
    return candidate


def allowed_hosts(public_ip: str | None, extra: tuple[str, ...] = ()) -> str:
    hosts = ["localhost", "127.0.0.1"]
    for h in (public_ip, *extra):
        if h and h not in hosts:
            hosts.append(h)
    return ",".join(hosts)
