#!/usr/bin/env python3

import logging
import os
import signal

from dotenv import load_dotenv

# --- Project Modules ---
from myportal_client import MyPortalClient
from task_logging import configure_logging
from task_supervisor import TaskSupervisor

# --- Load Environment Variables ---
load_dotenv()  # Load variables from .env file into environment

# --- Configuration ---
CONFIG_DIR = os.getenv("MYPORTAL_CONFIG_DIR", "configs")
LOG_LEVEL = os.getenv("MYPORTAL_LOG_LEVEL", "INFO").upper()


def fetch_portal_terms():
    """{term description: term code} for the terms currently open on the portal."""
    client = MyPortalClient()
    try:
        return client.fetch_terms()
    finally:
        client.close()


def install_signal_handlers(supervisor):
    def handle_signal(signum, frame):
        logging.info(f"Received {signal.Signals(signum).name}. Stopping all tasks...")
        supervisor.stop()

    for name in ("SIGINT", "SIGTERM", "SIGHUP"):
        signum = getattr(signal, name, None)  # SIGHUP doesn't exist on Windows
        if signum is not None:
            signal.signal(signum, handle_signal)


def main():
    configure_logging(getattr(logging, LOG_LEVEL, logging.INFO))
    logging.info("Starting MyPortal Auto-Register...")
    logging.info(f"Reading task configs from '{CONFIG_DIR}'.")

    supervisor = TaskSupervisor(config_dir=CONFIG_DIR, terms_provider=fetch_portal_terms)
    install_signal_handlers(supervisor)

    try:
        supervisor.start()
    except Exception as e:  # Catch any other unexpected exceptions in the supervisor
        logging.critical(f"An unexpected error occurred in the supervisor: {e}", exc_info=True)
        raise
    finally:
        logging.info("Exiting MyPortal Auto-Register.")


if __name__ == "__main__":
    main()
