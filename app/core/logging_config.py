import logging
import json
import os

from app.core.config import config
from app.models import Transaction, Payment, AdminLog

# ledger logging (transactions)
TRANSACTION_FIELDS = {c.name for c in Transaction.__table__.columns}
# payments / webhooks logging
PAYMENT_FIELDS = {c.name for c in Payment.__table__.columns} | {
    "capture_id", "order_id", "event_type", "raw_event", "deficit"
}
# admin logging
ADMIN_FIELDS = {c.name for c in AdminLog.__table__.columns}


class ModelFormatter(logging.Formatter):
    def __init__(self, fmt=None, fields=None):
        super().__init__(fmt)
        self.fields = fields or set()

    def format(self, record):
        base = super().format(record)
        extras = {k: v for k, v in record.__dict__.items() if k in self.fields}
        if extras:
            base += " " + json.dumps(extras, default=str, ensure_ascii=False)
        return base


def _channel(name: str, filename: str, fields: set) -> logging.Logger:
    handler = logging.FileHandler(os.path.join(config.LOG_DIR, filename))
    handler.setFormatter(ModelFormatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        fields=fields
    ))
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    # setup_logging may run more than once (tests, reload)
    for old in [h for h in logger.handlers if isinstance(h, logging.FileHandler)]:
        logger.removeHandler(old)
        old.close()
    logger.addHandler(handler)
    return logger


# setup
def setup_logging():
    os.makedirs(config.LOG_DIR, exist_ok=True)

    # credit ledger mutations
    _channel("[LEDGER]", "ledger.log", TRANSACTION_FIELDS)

    # checkout, capture, webhooks
    _channel("[PAYMENTS]", "payments.log", PAYMENT_FIELDS)

    # ADMIN
    _channel("[ADMIN]", "admin.log", ADMIN_FIELDS)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
