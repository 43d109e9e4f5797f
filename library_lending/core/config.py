import os
import logging

COPY_REDUCTION_POLICIES = ("clamp", "reject", "deficit")


class Settings:
    def __init__(self):
        self.database_url = os.getenv("LENDING_DATABASE_URL", "sqlite:///./library_lending.db")
        self.log_level = os.getenv("LENDING_LOG_LEVEL", "INFO").upper()
        self.loan_days = int(os.getenv("LENDING_LOAN_DAYS", "14"))
        self.copy_reduction_policy = os.getenv("LENDING_COPY_REDUCTION_POLICY", "clamp").lower()
        self.host = os.getenv("LENDING_HOST", "127.0.0.1")
        self.port = int(os.getenv("LENDING_PORT", "8000"))

        if self.copy_reduction_policy not in COPY_REDUCTION_POLICIES:
            raise ValueError(
                f"LENDING_COPY_REDUCTION_POLICY must be one of {', '.join(COPY_REDUCTION_POLICIES)}, "
                f"got {self.copy_reduction_policy!r}"
            )
        if self.loan_days < 1:
            raise ValueError("LENDING_LOAN_DAYS must be >= 1")


settings = Settings()


def configure_logging(level=None):
    logging.basicConfig(level=level or settings.log_level,
                        format="%(asctime)s %(levelname)s %(name)s - %(message)s")
