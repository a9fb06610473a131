"""
Polygon HTTP RPC endpoints for contract reads and raw transaction submission.

Endpoint order:
  1. RPC_URL_HTTP (explicit, see SniperConfig)
  2. Infura, when INFURA_PROJECT_ID / INFURA_API_KEY is set
  3. POLYGON_RPC_URLS (comma separated), else the public list below

The first endpoint that answers on the expected chain id wins.
"""
import base64
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from web3 import Web3

log = logging.getLogger(__name__)

PUBLIC_POLYGON_RPCS: List[str] = [
    "https://polygon-rpc.com",
    "https://polygon.drpc.org",
    "https://rpc.ankr.com/polygon",
    "https://polygon-bor-rpc.publicnode.com",
    "https://1rpc.io/matic",
]


def _infura_credentials() -> Tuple[str, str]:
    key = os.getenv("INFURA_PROJECT_ID", "").strip() or os.getenv("INFURA_API_KEY", "").strip()
    return key, os.getenv("INFURA_API_SECRET", "").strip()


def rpc_endpoints(explicit: str = "") -> List[str]:
    """Ordered, de-duplicated endpoint list."""
    candidates = [explicit.strip()] if explicit else []

    infura_key, _ = _infura_credentials()
    if infura_key:
        candidates.append(f"https://polygon-mainnet.infura.io/v3/{infura_key}")

    configured = [u.strip() for u in os.getenv("POLYGON_RPC_URLS", "").split(",") if u.strip()]
    candidates.extend(configured or PUBLIC_POLYGON_RPCS)

    seen = set()
    return [u for u in candidates if u and not (u in seen or seen.add(u))]


def provider_kwargs(url: str, timeout: float = 10) -> Dict[str, Any]:
    """request_kwargs for HTTPProvider; Infura with a secret needs Basic auth."""
    kwargs: Dict[str, Any] = {"timeout": timeout}
    key, secret = _infura_credentials()
    if "infura.io" in url and key and secret:
        token = base64.b64encode(f"{key}:{secret}".encode()).decode()
        kwargs["headers"] = {"Authorization": f"Basic {token}"}
    return kwargs


def connect_web3(urls: List[str], timeout: float = 10, chain_id: Optional[int] = None) -> Optional[Web3]:
    """Web3 bound to the first endpoint that answers (on ``chain_id`` when given)."""
    for url in urls:
        w3 = Web3(Web3.HTTPProvider(url, request_kwargs=provider_kwargs(url, timeout)))
        try:
            if not w3.is_connected():
                log.warning(f"RPC not reachable: {url}")
                continue
            if chain_id is not None and w3.eth.chain_id != chain_id:
                log.warning(f"RPC {url} is on chain {w3.eth.chain_id}, expected {chain_id}")
                continue
        except Exception as e:
            log.warning(f"RPC {url} failed: {e}")
            continue
        log.info(f"Connected to RPC {url}")
        return w3
    return None
