#!/usr/bin/env python3
"""
Build script for Render deployment.
This script initializes the database and creates necessary tables.
"""
from app import create_app, ensure_sandbox_school, ensure_site_admin
from config import get_config
from models import db


def initialize_database():
    """Initialize database for production deployment."""
    app = create_app(get_config('production'))
    with app.app_context():
        print("Creating database tables...")
        db.create_all()

        print("Creating site administrator...")
        ensure_site_admin(app)
        ensure_sandbox_school(app)

        print("Database initialization completed successfully!")


if __name__ == "__main__":
    initialize_database()
