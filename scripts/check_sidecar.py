"""Query a running streaming sidecar's control API and print what it reports."""

import os
import sys

import httpx

url = os.environ.get("DILLINGER_SIDECAR_URL", "http://127.0.0.1:9999")
print(f"Checking sidecar at: {url}")

try:
    ready = httpx.get(f"{url}/readyz", timeout=2.0)
    print(f"Ready: {ready.status_code} {ready.json()}")
    status = httpx.get(f"{url}/status", timeout=2.0).json()
    print(f"Mode: {status['mode']}  profile: {status['profile']}  gpu: {status['gpu']}")
    print(f"Paired clients: {len(status['pairedClients'])}")
except httpx.HTTPError as e:
    print(f"UNREACHABLE: {e}")
    sys.exit(1)
