from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("TETHRU_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("TETHRU_HOST", "0.0.0.0")
    port = int(os.getenv("TETHRU_PORT", "8080"))
    uvicorn.run("tethru.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
