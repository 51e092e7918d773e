from __future__ import annotations

import os

import uvicorn

from logproxy.apps.api.main import create_app


def main() -> None:
    # Bind address comes from the environment so the same entrypoint works locally and in containers.
    app = create_app()
    uvicorn.run(app, host=os.getenv("LOGPROXY_HOST", "0.0.0.0"), port=int(os.getenv("LOGPROXY_PORT", "3001")))


if __name__ == "__main__":
    main()
