import logging
import logging.config


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def make_dict_config(level: str = "INFO") -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"format": LOG_FORMAT},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "": {"handlers": ["console"], "level": level},
            "rental_inbox": {"level": level, "propagate": True},
            # change stream reconnects are chatty at DEBUG
            "pymongo": {"level": "WARNING"},
        },
    }


def setup_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(make_dict_config(level))
    logging.getLogger(__name__).debug("logging configured at %s", level)
