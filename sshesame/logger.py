import json
import logging
import os
import sys


class FieldsFormatter(logging.Formatter):
    """Appends the structured fields of a record as key=value pairs."""

    def format(self, record):
        message = super().format(record)
        fields = getattr(record, 'fields', None)
        if fields:
            message += ' ' + ' '.join(f'{key}={json.dumps(value)}' for key, value in fields.items())
        return message


class JSONLoggingHandler(logging.Handler):
    def __init__(self, log_dir='logs'):
        super().__init__()
        self.log_dir = log_dir
        if not os.path.exists(log_dir):
            os.makedirs(log_dir)
        self.log_file = os.path.join(log_dir, 'sshesame.json')

    def emit(self, record):
        try:
            log_entry = {
                'timestamp': self.formatter.formatTime(record) if self.formatter else record.created,
                'level': record.levelname,
                'service': record.name,
                'message': record.getMessage(),
            }
            log_entry.update(getattr(record, 'fields', None) or {})

            # One write per record; the handler lock keeps concurrent connections from interleaving lines.
            with open(self.log_file, 'a') as f:
                f.write(json.dumps(log_entry) + '\n')
        except Exception:
            self.handleError(record)


def setup_logger(name='sshesame', log_file=None, json_log_dir=None, level=logging.INFO):
    """Configure the named logger with a console handler and optional file and JSON handlers.

    Calling it again for the same logger replaces the handlers it installed earlier.
    """
    formatter = FieldsFormatter('%(asctime)s %(levelname)s %(message)s')

    logger = logging.getLogger(name)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if getattr(handler, '_sshesame', False):
            logger.removeHandler(handler)
            handler.close()

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    if json_log_dir:
        handlers.append(JSONLoggingHandler(json_log_dir))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler._sshesame = True
        logger.addHandler(handler)

    return logger


class ConnectionLogAdapter(logging.LoggerAdapter):
    """Merges the connection identity into the fields of every record."""

    def process(self, msg, kwargs):
        extra = kwargs.setdefault('extra', {})
        fields = dict(self.extra)
        fields.update(extra.get('fields', {}))
        extra['fields'] = fields
        return msg, kwargs


def get_log_entry(conn, logger=None):
    if logger is None:
        logger = logging.getLogger('sshesame')
    return ConnectionLogAdapter(logger, conn.log_fields())
