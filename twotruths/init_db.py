from . import crud
from .config import Settings
from .logging_utils import get_logger, setup_logging

logger = get_logger("twotruths.init_db")


def init_db(path: str = ""):
    url = path or Settings.from_env().database_url
    engine = crud.init_engine(url)
    logger.info("db_initialized", extra={"path": url})
    return engine


if __name__ == '__main__':
    setup_logging()
    init_db()
