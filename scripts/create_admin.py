import argparse
import os
import sys

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app import app, db, User, ROLE_ADMIN, ROLE_SUDO, utcnow


def create_admin(username, email, password, role=ROLE_ADMIN):
    """Creates a new admin user."""
    with app.app_context():
        try:
            existing = db.session.execute(
                db.select(User).filter_by(username=username)
            ).scalar()

            if existing:
                print(f"User '{username}' already exists.")
                return False

            admin = User(
                username=username,
                email=email or None,
                role=role,
                is_active=True,
                created_at=utcnow()
            )
            admin.set_password(password)
            db.session.add(admin)
            db.session.commit()
            print(f"{role.capitalize()} user '{username}' created successfully.")
            return True

        except Exception as e:
            db.session.rollback()
            print(f"Error creating admin user: {str(e)}")
            return False


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Create a new admin user.')
    parser.add_argument('username', type=str, help='The username for the admin user.')
    parser.add_argument('password', type=str, help='The password for the admin user.')
    parser.add_argument('--email', type=str, default=None, help='Optional email address.')
    parser.add_argument('--sudo', action='store_true', help='Create a sudo user instead of admin.')

    args = parser.parse_args()

    ok = create_admin(args.username, args.email, args.password, ROLE_SUDO if args.sudo else ROLE_ADMIN)
    sys.exit(0 if ok else 1)
