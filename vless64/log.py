import logging
from logging.handlers import RotatingFileHandler

import colorlog
import orjson

FMT = '%(asctime)s [%(levelname)s] %(message)s'
DATEFMT = '%Y-%m-%d %H:%M:%S'


class JsonFormatter(logging.Formatter):
    def format(self, record):
        entry = {
            "timestamp": self.formatTime(record, DATEFMT),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return orjson.dumps(entry).decode('utf-8')


def setup_logger(level=logging.INFO, logfile=None, log_format='text'):
    root = logging.getLogger('v64')
    root.setLevel(level)
    # remove existing handlers to avoid duplicate logs when reloading
    for h in list(root.handlers):
        root.removeHandler(h)

    if logfile:
        handler = RotatingFileHandler(logfile, maxBytes=10_000_000, backupCount=5)
        handler.setFormatter(JsonFormatter() if log_format == 'json' else logging.Formatter(FMT, DATEFMT))
    elif log_format == 'json':
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
    else:
        handler = colorlog.StreamHandler()
        handler.setFormatter(colorlog.ColoredFormatter(
            '%(log_color)s' + FMT,
            datefmt=DATEFMT,
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            }
        ))
    root.addHandler(handler)
    return root
