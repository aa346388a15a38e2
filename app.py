"""
Flask application exposing the POS printer dispatch service.
"""

import logging

from api.router import Router
from pos_printer.manager import PrinterManager, load_config

CONFIG_PATH = 'config.json'

config = load_config(CONFIG_PATH)
log_level = getattr(logging, str(config['logging']['level']).upper(), logging.INFO)

logging.basicConfig(
    level=log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    force=True  # Ensure this overrides any prior configuration
)

logger = logging.getLogger(__name__)
logger.info(f"Logging level set to: {logging.getLevelName(log_level)}")


if __name__ == '__main__':
    printer_manager = None
    try:
        logger.info("Initializing printer service...")
        printer_manager = PrinterManager(CONFIG_PATH)

        restored = printer_manager.restore_saved_printers()
        if restored:
            logger.info(f"Restored printers: {restored}")

        router = Router(printer_manager)

        host = config['server']['host']
        port = config['server']['port']
        debug = config['server']['debug']

        logger.info(f"Starting server on {host}:{port}")
        router.app.run(host=host, port=port, debug=debug, use_reloader=False)

    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    finally:
        logger.info("Shutting down application...")
        if printer_manager:
            printer_manager.shutdown()
        logger.info("Cleanup complete")
