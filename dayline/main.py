from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.getenv("DAYLINE_HOST", "0.0.0.0")
    port = int(os.getenv("DAYLINE_PORT", "8080"))
    uvicorn.run("dayline.web_api:create_app", host=host, port=port, reload=False, factory=True)


if __name__ == "__main__":
    main()
