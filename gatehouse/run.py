from __future__ import annotations

import uvicorn

from gatehouse.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "gatehouse.app:app",
        host=settings.host,
        port=int(settings.port),
        proxy_headers=True,
        reload=False,
    )


if __name__ == "__main__":
    main()
