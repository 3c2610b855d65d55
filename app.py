import atexit
import logging
import sys

from api.routes import create_app
from lib.config import get_settings

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout,
    force=True
)
logger = logging.getLogger(__name__)

app = create_app(settings)
atexit.register(app.extensions['echoes'].analysis_queue.stop)

if __name__ == "__main__":
    # Log startup
    logger.info("Starting Flask server...")
    app.run(debug=settings.environment == "development", port=8000)
