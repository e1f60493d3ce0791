import logging

import uvicorn

from print_agent.env import AGENT_HOST, AGENT_PORT, LOG_LEVEL


def main():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("print_agent.api:app", host=AGENT_HOST, port=AGENT_PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
