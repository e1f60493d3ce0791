"""HTTP client the host POS application uses to talk to a print agent."""
import base64
import json
import logging
import os
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

TOKEN = os.getenv("PRINT_AGENT_TOKEN") or os.getenv("AGENT_TOKEN")

# direct URL of a single agent
DEFAULT_AGENT_URL = os.getenv("PRINT_AGENT_URL")

# several agents: [{"id": "caja-1", "base_url": "http://10.0.0.5:9001"}, ...]
_agents_raw = os.getenv("PRINT_AGENTS_JSON", "[]")
try:
    AGENTS: List[Dict[str, Any]] = json.loads(_agents_raw)
    if not isinstance(AGENTS, list):
        AGENTS = []
except ValueError:
    logger.warning("PRINT_AGENTS_JSON is not valid JSON, ignoring it")
    AGENTS = []


def _headers() -> Dict[str, str]:
    h: Dict[str, str] = {"Content-Type": "application/json"}
    if TOKEN:
        h["X-Agent-Token"] = TOKEN
    return h


def _resolve_agent_url(agent_url: Optional[str] = None, agent_id: Optional[str] = None) -> str:
    # 1) explicit URL from the caller
    if agent_url:
        return agent_url.rstrip("/")

    # 2) URL from env
    if DEFAULT_AGENT_URL:
        return DEFAULT_AGENT_URL.rstrip("/")

    # 3) look agent_id up in PRINT_AGENTS_JSON
    if agent_id:
        for a in AGENTS:
            if a.get("id") == agent_id and a.get("base_url"):
                return str(a["base_url"]).rstrip("/")
        raise RuntimeError(f"Agent with id '{agent_id}' not found")

    # 4) first configured agent
    if AGENTS and AGENTS[0].get("base_url"):
        return str(AGENTS[0]["base_url"]).rstrip("/")

    raise RuntimeError("No agent configured. Set PRINT_AGENT_URL or PRINT_AGENTS_JSON.")


def submit_job(
    *,
    printer: str,
    receipt: Optional[Dict[str, Any]] = None,
    raw: Optional[bytes] = None,
    text: Optional[str] = None,
    job_type: str = "receipt",
    copies: int = 1,
    wait: bool = True,
    agent_url: Optional[str] = None,
    agent_id: Optional[str] = None,
    timeout: int = 60,
) -> Dict[str, Any]:
    """
    Send a print job to the agent.

    Pass one of ``receipt`` (StructuredReceipt as a dict), ``raw`` (already
    encoded ESC/POS bytes) or ``text``. Test job types take none.
    With ``wait=True`` the agent answers with the PrintResult / BatchResult.
    """
    base_url = _resolve_agent_url(agent_url=agent_url, agent_id=agent_id)

    payload: Dict[str, Any] = {
        "printer": printer,
        "job_type": job_type,
        "copies": int(copies),
        "wait": wait,
    }
    if receipt is not None:
        payload["receipt"] = receipt
    if raw is not None:
        payload["raw_base64"] = base64.b64encode(raw).decode("ascii")
    if text is not None:
        payload["raw_text"] = text

    r = requests.post(f"{base_url}/jobs", json=payload, headers=_headers(), timeout=timeout)
    r.raise_for_status()
    return r.json()


def get_job(job_id: str, *, agent_url: Optional[str] = None, agent_id: Optional[str] = None,
            timeout: int = 10) -> Dict[str, Any]:
    base_url = _resolve_agent_url(agent_url=agent_url, agent_id=agent_id)
    r = requests.get(f"{base_url}/jobs/{job_id}", headers=_headers(), timeout=timeout)
    r.raise_for_status()
    return r.json()


def list_printers(*, agent_url: Optional[str] = None, agent_id: Optional[str] = None,
                  timeout: int = 15) -> Dict[str, Any]:
    base_url = _resolve_agent_url(agent_url=agent_url, agent_id=agent_id)
    r = requests.get(f"{base_url}/printers", headers=_headers(), timeout=timeout)
    r.raise_for_status()
    return r.json()


def run_diagnostic(printer: str, *, agent_url: Optional[str] = None, agent_id: Optional[str] = None,
                   timeout: int = 30) -> Dict[str, Any]:
    base_url = _resolve_agent_url(agent_url=agent_url, agent_id=agent_id)
    r = requests.post(
        f"{base_url}/printers/{requests.utils.quote(printer, safe='')}/diagnostic",
        headers=_headers(),
        timeout=timeout,
    )
    r.raise_for_status()
    return r.json()
