"""
Seed demo profiles (one per role) and print a bearer token for each.

Usage:
  python scripts/seed_profiles.py

This script is idempotent: running it multiple times upserts the same profiles.
"""

from safetyhub.auth.security import create_access_token
from safetyhub.db import Base, SessionLocal, engine
from safetyhub.models.models import Profile


PROFILES = [
    {"email": "reporter@example.com", "full_name": "Riley Reporter", "role": "user"},
    {"email": "reviewer@example.com", "full_name": "Robin Reviewer", "role": "reviewer"},
    {"email": "assignee@example.com", "full_name": "Alex Assignee", "role": "assignee"},
]


def seed_profiles():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        tokens = {}
        for data in PROFILES:
            profile = db.query(Profile).filter(Profile.email == data["email"]).first()
            if profile:
                # Role is immutable; only the display name is refreshed
                if profile.full_name != data["full_name"]:
                    profile.full_name = data["full_name"]
            else:
                profile = Profile(**data)
                db.add(profile)
                db.flush()
            tokens[data["email"]] = (profile.role, create_access_token(str(profile.id)))
        db.commit()
        print("Profiles seeded successfully!")
        for email, (role, token) in tokens.items():
            print(f"  {role:<9} {email}\n    Bearer {token}")
    except Exception as e:
        db.rollback()
        print(f"Error seeding profiles: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed_profiles()
