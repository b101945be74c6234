"""
WSGI entry point

Point the server at `wsgi:application`, e.g.
    gunicorn wsgi:application
"""

import os
import logging

from app import create_app

config_name = os.environ.get('FLASK_ENV', 'production')
application = create_app(config_name)

logging.basicConfig(
    level=getattr(logging, application.config['LOG_LEVEL']),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(os.path.join(application.config['LOG_FOLDER'], 'app.log')),
        logging.StreamHandler()
    ]
)
