import re
import socket
import logging
import platform
import subprocess
from typing import Optional

import requests
import urllib3

from netipam.config import PROBE_TIMEOUT_MS

logger = logging.getLogger(__name__)

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

FIRST_IPV4 = re.compile(r"\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)\b")


def extract_ipv4(text: Optional[str]) -> Optional[str]:
    if not text or not text.strip():
        return None
    m = FIRST_IPV4.search(text)
    return m.group(0) if m else None


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


class Prober:
    """Ping / TCP / HTTP reachability checks.

    Every check answers with a bool; timeouts, refusals, DNS failures and
    non-2xx answers are all just ``False``.
    """

    def __init__(self, timeout_ms: int = PROBE_TIMEOUT_MS, attempts: int = 1):
        self.timeout_ms = timeout_ms
        self.attempts = attempts

    def is_alive(self, ip_text: Optional[str], timeout_ms: Optional[int] = None,
                 attempts: Optional[int] = None) -> bool:
        ip = extract_ipv4(ip_text)
        if not ip:
            return False

        timeout_ms = _clamp(timeout_ms or self.timeout_ms, 200, 5000)
        attempts = _clamp(attempts or self.attempts, 1, 5)

        for _ in range(attempts):
            if self._ping_once(ip, timeout_ms):
                return True
        return False

    def _ping_once(self, ip: str, timeout_ms: int) -> bool:
        if platform.system().lower() == "windows":
            cmd = ["ping", "-n", "1", "-w", str(timeout_ms), ip]
        else:
            cmd = ["ping", "-c", "1", "-W", str(max(1, round(timeout_ms / 1000))), ip]
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=timeout_ms / 1000 + 2,
            )
            return result.returncode == 0
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"ping {ip} failed: {e}")
            return False

    def is_tcp_open(self, ip_text: Optional[str], port: Optional[int],
                    timeout_ms: Optional[int] = None) -> bool:
        ip = extract_ipv4(ip_text)
        if not ip or not port or not 0 < port <= 65535:
            return False

        timeout_ms = _clamp(timeout_ms or self.timeout_ms, 200, 5000)
        try:
            with socket.create_connection((ip, port), timeout=timeout_ms / 1000):
                return True
        except OSError:
            return False

    def is_http_ok(self, ip_text: Optional[str], port: Optional[int], use_https: bool,
                   path: Optional[str], timeout_ms: Optional[int] = None) -> bool:
        ip = extract_ipv4(ip_text)
        if not ip:
            return False

        timeout_ms = _clamp(timeout_ms or self.timeout_ms, 200, 8000)
        scheme = "https" if use_https else "http"
        port = port or (443 if use_https else 80)
        if not 0 < port <= 65535:
            return False

        path = (path or "").strip() or "/"
        if not path.startswith("/"):
            path = "/" + path

        try:
            resp = requests.get(f"{scheme}://{ip}:{port}{path}", timeout=timeout_ms / 1000, verify=False)
            return 200 <= resp.status_code < 300
        except requests.RequestException:
            return False
