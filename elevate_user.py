"""Give an existing user a staff role so they can run circulation desks and receive staff notifications.

usage: python elevate_user.py someone@example.com [admin|librarian]
"""
import sys

from database import SessionLocal
import models


def run(email: str, role: str = models.UserRole.ADMIN.value):
    if role not in (models.UserRole.ADMIN.value, models.UserRole.LIBRARIAN.value):
        print("Role must be admin or librarian, got:", role)
        return False
    db = SessionLocal()
    try:
        user = db.query(models.User).filter(models.User.email == email).first()
        if not user:
            print("User not found:", email)
            return False
        print("Before:", user.id, user.email, user.role, user.is_active)
        user.role = role
        user.is_active = True
        db.commit()
        db.refresh(user)
        print("After:", user.id, user.email, user.role, user.is_active)
        print(f"User promoted to {role}:", email)
        return True
    finally:
        db.close()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    ok = run(sys.argv[1], *sys.argv[2:3])
    sys.exit(0 if ok else 1)
