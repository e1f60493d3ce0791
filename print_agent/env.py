import os
from dotenv import load_dotenv

load_dotenv()  # reads .env from the cwd


def _int_or_none(value):
    if not value:
        return None
    return int(value, 0)  # accepts 0x0416 as well as 1046


PRINT_AGENT_TOKEN = os.getenv("PRINT_AGENT_TOKEN", "")
AGENT_ID = os.getenv("AGENT_ID", "agent-unknown")
AGENT_NAME = os.getenv("AGENT_NAME", AGENT_ID)
AGENT_HOST = os.getenv("AGENT_HOST", "127.0.0.1")
AGENT_PORT = int(os.getenv("AGENT_PORT", "9001"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

AUDIT_LOG_PATH = os.getenv("AUDIT_LOG_PATH", "./logs/audit.jsonl")

QUEUE_MAX = int(os.getenv("QUEUE_MAX", "200"))
JOB_HISTORY_MAX = int(os.getenv("JOB_HISTORY_MAX", "500"))

# Encoder
DEFAULT_PAGE_WIDTH = int(os.getenv("DEFAULT_PAGE_WIDTH", "80"))  # mm
PRINTER_ENCODING = os.getenv("PRINTER_ENCODING", "cp437")

# Per-method timeouts (ms)
SPOOL_TIMEOUT_MS = int(os.getenv("SPOOL_TIMEOUT_MS", "15000"))
USB_TIMEOUT_MS = int(os.getenv("USB_TIMEOUT_MS", "10000"))
SERIAL_TIMEOUT_MS = int(os.getenv("SERIAL_TIMEOUT_MS", "5000"))
SHELL_TIMEOUT_MS = int(os.getenv("SHELL_TIMEOUT_MS", "10000"))

# Direct USB / serial
USB_VENDOR_ID = _int_or_none(os.getenv("USB_VENDOR_ID"))
USB_PRODUCT_ID = _int_or_none(os.getenv("USB_PRODUCT_ID"))
SERIAL_PORTS = [p.strip() for p in os.getenv("SERIAL_PORTS", "").split(",") if p.strip()]
SERIAL_BAUD = int(os.getenv("SERIAL_BAUD", "9600"))
SERIAL_REQUIRE_STATUS = os.getenv("SERIAL_REQUIRE_STATUS", "true").lower() == "true"

# Spooler monitor
SPOOLER_POLL_SECONDS = float(os.getenv("SPOOLER_POLL_SECONDS", "300"))
STUCK_JOB_SECONDS = float(os.getenv("STUCK_JOB_SECONDS", "300"))
SPOOLER_RESTART_COOLDOWN_SECONDS = float(os.getenv("SPOOLER_RESTART_COOLDOWN_SECONDS", "1800"))
SPOOLER_AUTO_REPAIR = os.getenv("SPOOLER_AUTO_REPAIR", "true").lower() == "true"
