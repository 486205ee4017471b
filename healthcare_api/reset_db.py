import os

from healthcare_api.database import Base, SessionLocal, engine, init_db
from healthcare_api.models import Role, User
from healthcare_api.security import hash_password

print("🔧 Resetting database...")
Base.metadata.drop_all(bind=engine)
init_db(engine)

# Admins cannot self-register; seed one when credentials are provided
admin_email = os.environ.get("ADMIN_EMAIL")
admin_password = os.environ.get("ADMIN_PASSWORD")
if admin_email and admin_password:
    with SessionLocal() as db:
        db.add(User(
            full_name=os.environ.get("ADMIN_NAME", "Administrator"),
            email=admin_email.lower().strip(),
            phone_number=os.environ.get("ADMIN_PHONE", "000"),
            password_hash=hash_password(admin_password),
            role=Role.ADMIN.value,
        ))
        db.commit()
    print(f"👤 Admin {admin_email} created.")
print("✅ Database reset successful.")
