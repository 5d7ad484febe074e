"""Post-apply readiness checks.

Validates that an applied document is usable:
- declared outputs are present and non-empty
- HTTP endpoints accept unauthenticated requests
"""

import logging
import time
from typing import Any, Optional

import requests

from common import OperationResult, poll

logger = logging.getLogger(__name__)

REJECTED_STATUSES = (401, 403)


def _request(url: str, timeout: float) -> tuple[Optional[int], str]:
    """GET url without credentials; returns (status code or None, message)."""
    try:
        resp = requests.get(url, timeout=timeout, allow_redirects=True)
    except requests.exceptions.Timeout:
        return None, f"Timeout connecting to {url}"
    except requests.exceptions.ConnectionError as e:
        return None, f"Cannot connect to {url}: {e}"
    except requests.exceptions.RequestException as e:
        return None, f"Error probing {url}: {e}"

    if resp.status_code in REJECTED_STATUSES:
        return resp.status_code, (
            f"{url} rejected an unauthenticated request ({resp.status_code}). "
            f"Grant roles/cloudfunctions.invoker to allUsers to make it public"
        )
    if 200 <= resp.status_code < 300:
        return resp.status_code, f"{url} answered {resp.status_code}"
    return resp.status_code, f"Unexpected response from {url}: {resp.status_code} - {resp.text[:100]}"


def probe_endpoint(url: str, timeout: float = 10.0) -> tuple[bool, str]:
    """Send one unauthenticated GET to url.

    Args:
        url: Endpoint URL (e.g., https://us-central1-proj.cloudfunctions.net/fn)
        timeout: Request timeout in seconds

    Returns:
        (success, message) tuple; success only for a 2xx response
    """
    status, message = _request(url, timeout)
    return status is not None and 200 <= status < 300, message


def wait_for_endpoint(url: str, timeout: float = 60, interval: float = 3) -> OperationResult:
    """Probe url until it answers 2xx or timeout expires.

    A 401/403 is not retried: the endpoint is up but not public.
    """
    start = time.time()
    statuses: list[Optional[int]] = []

    def _check() -> tuple[bool, str]:
        status, message = _request(url, timeout=10.0)
        statuses.append(status)
        return status is not None and (200 <= status < 300 or status in REJECTED_STATUSES), message

    ok, message = poll(_check, timeout=timeout, interval=interval, description=f'endpoint {url}')
    if statuses and statuses[-1] in REJECTED_STATUSES:
        ok = False
    return OperationResult(
        success=ok,
        message=message,
        duration=time.time() - start,
        details={'url': url},
    )


def check_outputs(outputs: dict[str, Any], declared: list[str]) -> OperationResult:
    """Every declared output must be present and non-empty.

    Args:
        outputs: Output values recorded after apply
        declared: Output names declared by the document

    Returns:
        OperationResult listing missing or empty outputs on failure
    """
    problems = []
    for name in declared:
        if name not in outputs:
            problems.append(f"{name} (missing)")
        elif outputs[name] in (None, '', [], {}):
            problems.append(f"{name} (empty)")
    if problems:
        return OperationResult(
            success=False,
            message=f"Outputs not ready: {', '.join(problems)}",
            details={'problems': problems},
        )
    return OperationResult(success=True, message=f"{len(declared)} outputs present")


def probe_outputs(
    outputs: dict[str, Any],
    names: list[str],
    timeout: float = 60,
    interval: float = 3,
) -> OperationResult:
    """Probe the URL held in each named output.

    Returns:
        OperationResult that fails on the first endpoint that is not public
    """
    start = time.time()
    probed: list[str] = []
    for name in names:
        url: Optional[str] = outputs.get(name)
        if not isinstance(url, str) or not url.startswith(('http://', 'https://')):
            return OperationResult(
                success=False,
                message=f"Output '{name}' is not an HTTP URL: {url!r}",
                duration=time.time() - start,
            )
        logger.info(f"Probing {name}: {url}")
        result = wait_for_endpoint(url, timeout=timeout, interval=interval)
        if not result.success:
            result.duration = time.time() - start
            return result
        probed.append(url)
    return OperationResult(
        success=True,
        message=f"{len(probed)} endpoints public",
        duration=time.time() - start,
        details={'urls': probed},
    )
