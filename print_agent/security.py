from fastapi import Header, HTTPException

from print_agent.env import PRINT_AGENT_TOKEN

AGENT_TOKEN = PRINT_AGENT_TOKEN


def verify_agent_token(x_agent_token: str = Header(...)):
    if not AGENT_TOKEN:
        raise HTTPException(
            status_code=500,
            detail="PRINT_AGENT_TOKEN is not configured on the agent"
        )

    if x_agent_token != AGENT_TOKEN:
        raise HTTPException(
            status_code=401,
            detail="Invalid agent token"
        )
