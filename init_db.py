#!/usr/bin/env python3
"""
Database initialization script
Run this separately to initialize the database
"""

import os
import sys
from dotenv import load_dotenv

# Add the current directory to Python path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from app import app, db, User, Client, ROLE_ADMIN


def _truthy(name):
    return (os.getenv(name, '').strip().lower() in ('1', 'true', 'yes', 'y', 'on'))


def initialize_database():
    """Initialize database with default data"""
    with app.app_context():
        try:
            print("Creating database tables...")
            db.create_all()

            if not _truthy('SEED_DEFAULT_USERS'):
                print("Skipping user seeding (set SEED_DEFAULT_USERS=true to enable).")
                print("✓ Database initialized successfully!")
                return

            admin_username = (os.getenv('SEED_ADMIN_USERNAME') or '').strip() or 'admin'
            admin_email = (os.getenv('SEED_ADMIN_EMAIL') or '').strip() or None
            admin_password = (os.getenv('SEED_ADMIN_PASSWORD') or '').strip()

            if not admin_password:
                raise RuntimeError("SEED_DEFAULT_USERS=true but SEED_ADMIN_PASSWORD not provided")

            print("Creating initial admin user...")

            admin_exists = db.session.execute(
                db.select(User).filter_by(role=ROLE_ADMIN)
            ).scalar()

            if not admin_exists:
                admin = User(
                    username=admin_username,
                    email=admin_email,
                    role=ROLE_ADMIN,
                    is_active=True
                )
                admin.set_password(admin_password)
                db.session.add(admin)
                print("✓ Admin user created")
            else:
                print("✓ Admin user already exists")

            # Optional first referral lab, e.g. SEED_CLIENT_NAME="City Diagnostic Center"
            client_name = (os.getenv('SEED_CLIENT_NAME') or '').strip()
            if client_name and not Client.query.filter_by(name=client_name).first():
                db.session.add(Client(name=client_name, type='REFERRAL_LAB', balance=0))
                print(f"✓ Client '{client_name}' created")

            db.session.commit()
            print("✓ Database initialized successfully!")

        except Exception as e:
            db.session.rollback()
            print(f"✗ Error initializing database: {str(e)}")
            raise


if __name__ == '__main__':
    load_dotenv()  # Load environment variables
    initialize_database()
