import uvicorn

from tabrelay.core.config import settings


def main():
    uvicorn.run("tabrelay.main:app", host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    main()
