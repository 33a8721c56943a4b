# =======================================================================================
# gatepass/__main__.py - Development Server
# =======================================================================================
import uvicorn

from .config import config


def main():
    uvicorn.run(
        "gatepass.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
        reload=config.API_DEBUG,
    )


if __name__ == "__main__":
    main()
