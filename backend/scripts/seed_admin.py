import argparse
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

import bcrypt
from dotenv import load_dotenv
from pymongo import MongoClient


DEFAULT_ADMIN_NAME = "CampusLink Admin"
DEFAULT_ADMIN_EMAIL = "admin@campuslink.local"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def main() -> None:
    env_path = Path(__file__).resolve().parents[1] / ".env"
    load_dotenv(env_path)

    parser = argparse.ArgumentParser(description="Create or promote a CampusLink admin account.")
    parser.add_argument("--name", default=DEFAULT_ADMIN_NAME, help="Admin display name")
    parser.add_argument("--email", default=DEFAULT_ADMIN_EMAIL, help="Admin login email")
    parser.add_argument("--password", required=True, help="Admin password (min 6 characters)")
    args = parser.parse_args()

    mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
    db_name = os.getenv("DB_NAME", "campuslink")

    email = args.email.strip().lower()
    name = args.name.strip()
    if not name:
        raise ValueError("Name cannot be empty")
    if len(args.password) < 6:
        raise ValueError("Password must be at least 6 characters")

    client = MongoClient(mongo_url)
    users = client[db_name]["users"]

    now_iso = datetime.now(timezone.utc).isoformat()
    admin_fields = {
        "name": name,
        "role": "admin",
        "is_active": True,
        "verification_status": "verified",
        "password_hash": hash_password(args.password),
        "updated_at": now_iso,
    }
    existing = users.find_one({"email": email}, {"_id": 0, "id": 1})

    if existing:
        users.update_one({"email": email}, {"$set": admin_fields})
        print(f"Promoted existing user to admin: {email}")
    else:
        users.insert_one(
            {
                "id": str(uuid.uuid4()),
                "email": email,
                "avatar": None,
                "id_card": None,
                "created_at": now_iso,
                **admin_fields,
            }
        )
        print(f"Created new admin user: {email}")

    client.close()
    print(f"Database: {db_name}")


if __name__ == "__main__":
    main()
