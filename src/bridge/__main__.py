import logging
import os

import uvicorn


def main() -> None:
    environment = os.environ.get("BRIDGE_ENV", "production").strip().lower()
    development = environment == "development"
    logging.basicConfig(
        level=logging.DEBUG if development else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run(
        "src.bridge.server:app",
        host=host,
        port=port,
        reload=development,
        log_level="debug" if development else "info",
    )


if __name__ == "__main__":
    main()
