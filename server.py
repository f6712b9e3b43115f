import uvicorn  # type: ignore

from adem.utils import configure_logging, get_logger

log = get_logger(__name__)

if __name__ == "__main__":
    configure_logging()
    log.info("Running server")
    uvicorn.run("adem.main:app", reload=True, host="127.0.0.1", port=8000)
