"""mcp server, exposes the cis audit tools via fastmcp"""

import logging
import os

from dotenv import load_dotenv
from fastmcp import FastMCP

from .tools.compliance import register_compliance_tools

load_dotenv()
log = logging.getLogger(__name__)

mcp = FastMCP("CIS Audit MCP")


def main() -> None:
    """start mcp server with the compliance tools registered."""
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    host = os.getenv("MCP_HOST", "127.0.0.1")
    port = int(os.getenv("MCP_PORT", "8001"))
    register_compliance_tools(mcp)

    log.info("serving cis audit tools on %s:%d", host, port)
    mcp.run(transport="streamable-http", host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
