import logging
import os

from dotenv import load_dotenv

load_dotenv()

from upestate_billing import create_app  # noqa: E402

config = os.getenv("FLASK_CONFIG", "production")

app = create_app(config)

logging.getLogger(__name__).info(f"Running in {config} mode")
