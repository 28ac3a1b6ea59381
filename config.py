import os
import sys
import logging
from dataclasses import dataclass
from typing import Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass
class SmtpConfig:
    """Outbound mail settings handed to EmailAlerter."""

    host: Optional[str] = None
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    secure_transport: bool = False
    sender: Optional[str] = None
    cc: Optional[str] = None
    timeout: float = 10
    recert_to: Optional[str] = None

    @property
    def is_complete(self):
        return bool(self.host and self.username and self.password)

    @classmethod
    def from_env(cls, overrides=None):
        """
        Build the config from environment variables (.env is loaded first).

        Args:
            overrides: Optional mapping, e.g. the 'smtp' section of the YAML
                config, whose values win over the environment

        Returns:
            SmtpConfig
        """
        load_dotenv()
        overrides = overrides or {}

        port = int(overrides.get('port') or os.getenv('SMTP_PORT') or 587)
        secure = overrides.get('secure_transport', os.getenv('SMTP_SECURE'))
        if secure is None or secure == '':
            secure = port == 465
        elif isinstance(secure, str):
            secure = secure.strip().lower() in ('1', 'true', 'yes', 'on')

        return cls(
            host=overrides.get('host') or os.getenv('SMTP_HOST'),
            port=port,
            username=overrides.get('username') or os.getenv('SMTP_USER'),
            password=overrides.get('password') or os.getenv('SMTP_PASS'),
            secure_transport=bool(secure),
            sender=overrides.get('sender') or os.getenv('SMTP_FROM'),
            cc=overrides.get('cc') or os.getenv('ALERT_CC'),
            timeout=float(overrides.get('timeout') or os.getenv('SMTP_TIMEOUT') or 10),
            recert_to=overrides.get('recert_to') or os.getenv('RECERT_NOTIFY_TO'),
        )


def loadconfig(configfile):
    '''Load configuration from a YAML file'''
    try:
        with open(configfile, 'r') as stream:
            config = yaml.safe_load(stream)
    except FileNotFoundError:
        logger.error("Configuration file %s not found.", configfile)
        sys.exit(1)
    except (yaml.YAMLError) as exc:
        logger.error("Error in configuration file %s: %s", configfile, exc)
        sys.exit(1)
    return config or {}


def setup_logging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
