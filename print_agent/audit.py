import json, time, os
import logging
from print_agent.env import AUDIT_LOG_PATH, AGENT_ID

logger = logging.getLogger(__name__)


def audit(event: str, payload: dict):
    record = {
        "ts": time.time(),
        "agent_id": AGENT_ID,
        "event": event,
        "payload": payload,
    }
    try:
        os.makedirs(os.path.dirname(AUDIT_LOG_PATH) or ".", exist_ok=True)
        with open(AUDIT_LOG_PATH, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
    except OSError as e:
        # a full disk must not take the print path down with it
        logger.warning("audit write failed for %s: %s", event, e)
