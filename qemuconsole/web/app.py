import logging
# Keep web framework chatter out of the console logs
logging.getLogger('werkzeug').disabled = True
logging.getLogger('werkzeug').setLevel(logging.ERROR)
logging.getLogger('socketio').setLevel(logging.ERROR)
logging.getLogger('engineio').setLevel(logging.ERROR)

from flask import Flask
from flask_socketio import SocketIO
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys

from ..config.manager import ConfigManager, get_config_manager
from ..core.backend import QemuConsoleBackend
from ..core.errors import BackendError, VMNotFound
from ..core.loader import protocol_loader
from ..core.machine import VMRegistry
from ..core.proxy import ProxyManager

# Initialize SocketIO without an app
socketio = SocketIO(logger=False, engineio_logger=False)

def setup_logging(app, logs_dir: Path, debug: bool = False):
    """Configure logging for the application."""
    logs_dir.mkdir(parents=True, exist_ok=True)
    level = logging.DEBUG if debug else logging.INFO

    # Set up application logger
    app_log_file = logs_dir / 'app.log'
    file_handler = RotatingFileHandler(app_log_file, maxBytes=1024*1024, backupCount=10)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    ))
    file_handler.setLevel(level)

    # Create console handler for our app logs
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s %(levelname)s: %(message)s'
    ))
    console_handler.setLevel(level)

    # Configure root logger for our application
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=[file_handler, console_handler]
    )

    # Set Flask logger to use our handlers
    app.logger.addHandler(file_handler)
    app.logger.addHandler(console_handler)
    app.logger.setLevel(level)
    app.logger.info('QEMU console startup')

def create_app(config_manager: ConfigManager = None, backend=None):
    """Create and configure the Flask application."""
    config_manager = config_manager or get_config_manager()
    app = Flask(__name__)

    # Configure app
    app.config['SECRET_KEY'] = 'dev'  # Change this in production
    app.config['JSON_SORT_KEYS'] = False

    # Set up logging
    setup_logging(app, config_manager.logs_dir, config_manager.section('web_interface').get('debug', False))

    # Initialize extensions with logging disabled
    socketio.init_app(app,
                     logger=False,
                     engineio_logger=False,
                     cors_allowed_origins="*",
                     ping_timeout=5,
                     ping_interval=25,
                     log_output=False)

    with app.app_context():
        app.config_manager = config_manager
        protocol_loader.timeout = config_manager.section('console').get('library_load_timeout', 10.0)

        if backend is None:
            proxy_config = config_manager.section('proxy')
            backend = QemuConsoleBackend(
                VMRegistry(config_manager),
                ProxyManager(
                    host=proxy_config.get('host', '127.0.0.1'),
                    start_port=proxy_config.get('start_port', 6080),
                    port_range=proxy_config.get('port_range', 100),
                ),
                read_size=config_manager.section('serial').get('read_size', 4096),
            )
        app.console_backend = backend

        # Register blueprints
        from .routes import bp as routes_bp
        app.register_blueprint(routes_bp)
        from . import websocket  # noqa: F401  registers the Socket.IO handlers

        # Register error handlers
        @app.errorhandler(BackendError)
        def backend_error(error):
            status = 404 if isinstance(error, VMNotFound) else 400
            return {'error': str(error)}, status

        @app.errorhandler(404)
        def not_found_error(error):
            return {'error': 'Not found'}, 404

        @app.errorhandler(500)
        def internal_error(error):
            app.logger.error('Server Error', exc_info=error)
            return {'error': 'Internal server error'}, 500

    return app
