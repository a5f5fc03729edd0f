import logging


def setup_logger(log_file: str = "cropqtl.log"):
    """Setup the package logger with a file and a console handler"""
    logger = logging.getLogger("cropqtl")
    logger.setLevel(logging.INFO)
    # keep records out of the root logger
    logger.propagate = False

    if logger.handlers:
        return logger

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s',
                                  datefmt='%Y-%m-%d %H:%M:%S')

    fh = logging.FileHandler(log_file, delay=True)
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    return logger


logger = setup_logger()
