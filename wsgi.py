"""WSGI entry point for production deployment."""
import sys
import os
import logging
from pathlib import Path

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).parent))

from config import load_config
from utils.logger import setup_logging
from models.database import Database
from alerts.engine import AlertEngine
from notifications.email_sender import EmailSender
from web.app import create_app

logger = logging.getLogger("fleetwatch.wsgi")

config = load_config(os.environ.get("FLEETWATCH_CONFIG"))
setup_logging(config["logging"]["level"], config["logging"].get("file"))

db = Database(config["database"]["path"])
db.connect()

engine = AlertEngine(db, config, email_sender=EmailSender(config))
engine.start()

app = create_app(config, {"engine": engine, "db": db})
logger.info(f"fleetwatch API ready (db={config['database']['path']})")
