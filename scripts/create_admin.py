"""
Create (or reset the password of) an admin account.

Usage:
  python scripts/create_admin.py <username> <email> <password>
"""

import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from patrolhub.db import Base, SessionLocal, engine
from patrolhub.models.models import User, ROLE_ADMIN
from patrolhub.auth.security import get_password_hash


def create_admin(username: str, email: str, password: str):
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.username == username).first()
        if user:
            user.password_hash = get_password_hash(password)
            user.role = ROLE_ADMIN
            user.is_active = True
            print(f"Updated admin: {username}")
        else:
            db.add(User(
                username=username,
                email=email,
                name=username,
                role=ROLE_ADMIN,
                password_hash=get_password_hash(password),
                is_active=True,
            ))
            print(f"Created admin: {username}")
        db.commit()
    finally:
        db.close()


if __name__ == "__main__":
    if len(sys.argv) != 4:
        print(__doc__)
        sys.exit(1)
    create_admin(sys.argv[1], sys.argv[2], sys.argv[3])
