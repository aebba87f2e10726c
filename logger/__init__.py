import logging
import os
import sys


class CustomExtraLogAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        my_context = kwargs.pop("extra", self.extra["extra"])
        if my_context is None:
            return msg, kwargs
        return "[%s] %s" % (my_context, msg), kwargs


def get_logger(name, level=None) -> logging.LoggerAdapter:

    FORMAT = "[%(levelname)s  %(name)s %(module)s:%(lineno)s - %(funcName)s() - %(asctime)s]\n\t %(message)s \n"
    TIME_FORMAT = "%d.%m.%Y %I:%M:%S %p"
    FILENAME = os.getenv("LOG_FILE")

    if level is None:
        level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)

    logger_instance = logging.getLogger(name)
    logger_instance.setLevel(level)

    # get_logger is called once per module; don't stack handlers on re-import.
    if not logger_instance.handlers:
        formatter = logging.Formatter(FORMAT, datefmt=TIME_FORMAT)

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger_instance.addHandler(handler)

        if FILENAME:
            file_handler = logging.FileHandler(FILENAME)
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            logger_instance.addHandler(file_handler)

    return CustomExtraLogAdapter(logger_instance, {"extra": None})
