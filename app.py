from flask import Flask
from flask_cors import CORS
import os
import logging
from dotenv import load_dotenv
import re
from datetime import timedelta

from extensions import db, migrate, jwt, socketio, scheduler
from scheduler import init_scheduler

load_dotenv()

def create_app(test_config=None):
    """
    The Application Factory.
    Creates and configures the app, but does not run it.
    """
    app = Flask(__name__)

    # --- CONFIGURATION ---
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'default_secret_key')
    # Fix Postgres URL for SQLAlchemy
    database_url = os.getenv('DATABASE_URL', 'sqlite:///ataa.db')
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://")
    app.config['SQLALCHEMY_DATABASE_URI'] = database_url

    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', 'fallback-secret-key')
    app.config['JWT_ACCESS_TOKEN_EXPIRES'] = timedelta(minutes=25)
    app.config['LOG_LEVEL'] = os.getenv('LOG_LEVEL', 'INFO')

    # --- FEATURE SERVICE CONFIGURATION ---
    app.config['CHARITIES_SERVICE_URL'] = os.getenv('CHARITIES_SERVICE_URL')
    app.config['NEEDIES_SERVICE_URL'] = os.getenv('NEEDIES_SERVICE_URL')
    app.config['DONORS_SERVICE_URL'] = os.getenv('DONORS_SERVICE_URL')
    app.config['DONATIONS_LAYER_URL'] = os.getenv('DONATIONS_LAYER_URL')
    app.config['FEATURE_SERVICE_TIMEOUT'] = float(os.getenv('FEATURE_SERVICE_TIMEOUT', 15))

    # --- DONATION LIMITS (EGP) ---
    app.config['MIN_DONATION_UNIT'] = os.getenv('MIN_DONATION_UNIT', '0')
    app.config['MAX_DONATION_AMOUNT'] = os.getenv('MAX_DONATION_AMOUNT', '1000000')

    # --- RECONCILER ---
    app.config['RECONCILE_BATCH_SIZE'] = int(os.getenv('RECONCILE_BATCH_SIZE', 50))
    app.config['RECONCILE_MAX_ATTEMPTS'] = int(os.getenv('RECONCILE_MAX_ATTEMPTS', 10))

    # Tests override before anything is initialized
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    # --- INITIALIZE EXTENSIONS ---
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    socketio.init_app(app)
    # Note: We init scheduler here, but start it in __main__
    scheduler.init_app(app)

    # --- CORS CONFIGURATION ---
    CORS(app, resources={
        r"/api/*": {
            "origins": [
                "http://localhost:3000",
                "http://localhost:5173",
                re.compile(r"^https://.*\.vercel\.app$")
            ],
            "methods": ["GET", "POST", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization", "X-Requested-With"],
            "supports_credentials": True
        }
    })

    # --- REGISTER BLUEPRINTS ---
    # Import inside the function to avoid circular imports
    from routes.donations import donations_bp
    from routes.recipients import recipients_bp

    app.register_blueprint(donations_bp)
    app.register_blueprint(recipients_bp)

    return app

# --- ENTRY POINT ---
# This only runs if you type 'python app.py'
if __name__ == "__main__":
    app = create_app()

    with app.app_context():
        db.create_all()

    # Start the Scheduler only when running the server (not during tests)
    init_scheduler(app)

    socketio.run(app, debug=True)
