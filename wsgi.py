# WSGI entry point
import os

basedir = os.path.abspath(os.path.dirname(__file__))

# Set environment variables for production
os.environ.setdefault('FLASK_ENV', 'production')
os.environ.setdefault('DATABASE_URL', f"sqlite:///{os.path.join(basedir, 'instance', 'gym_ledger.db')}")

# Ensure instance directory exists
instance_dir = os.path.join(basedir, 'instance')
if not os.path.exists(instance_dir):
    os.makedirs(instance_dir, exist_ok=True)

from gym_ledger import create_app, db

application = create_app('production')

with application.app_context():
    db.create_all()
