import uvicorn

from lab_requests.config import settings


def main() -> None:
    uvicorn.run(
        "lab_requests.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_env == "dev",
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
