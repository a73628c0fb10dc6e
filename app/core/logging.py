# app/core/logging.py
import logging


def configure_logging(level: str) -> None:
    """
    Configure root logging once for the API process.
    Records may carry `event` and `bed_id` extras; missing ones render as "-".
    """

    class _SafeFormatter(logging.Formatter):
        def format(self, record: logging.LogRecord) -> str:
            if not hasattr(record, "event"):
                record.event = "system"
            if not hasattr(record, "bed_id"):
                record.bed_id = "-"
            return super().format(record)

    handler = logging.StreamHandler()
    handler.setFormatter(
        _SafeFormatter(
            "%(asctime)s %(levelname)s %(name)s "
            "event=%(event)s bed_id=%(bed_id)s %(message)s"
        )
    )

    logging.basicConfig(level=level.upper(), handlers=[handler])

    # engine chatter only when DB_ECHO turns it on at engine level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
