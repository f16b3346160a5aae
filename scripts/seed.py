"""Seed a company, a provider, an admin and one project with API keys."""
from __future__ import annotations

from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

from app import db, models
from app.config import get_settings
from app.models.api_key import ApiKey, ApiScope
from app.services import projects as projects_service
from app.utils.apikey import gen_key


def _user(session, username: str, role: models.UserRole, **extra) -> models.User:
    user = models.User(username=username, email=f"{username}@example.com", role=role, **extra)
    session.add(user)
    session.flush()
    return user


def _key(session, user: models.User, scope: ApiScope) -> str:
    raw, prefix, key_hash = gen_key()
    session.add(ApiKey(name=f"seed-{user.username}", prefix=prefix, key_hash=key_hash, scope=scope, user_id=user.id))
    return raw


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    db.init_engine()
    db.create_all()
    session = db.get_sessionmaker()()

    try:
        company = _user(session, "acme", models.UserRole.COMPANY)
        provider = _user(
            session,
            "pixelworks",
            models.UserRole.PROVIDER,
            bank_name="Maybank",
            bank_account_number="514012345678",
            bank_account_name="Pixelworks Sdn Bhd",
        )
        admin = _user(session, "ops-admin", models.UserRole.ADMIN)
        keys = {
            "company": _key(session, company, ApiScope.company),
            "provider": _key(session, provider, ApiScope.provider),
            "admin": _key(session, admin, ApiScope.admin),
        }
        session.commit()

        project = projects_service.create_project(
            session,
            title="Mobile app redesign",
            customer_id=company.id,
            provider_id=provider.id,
            approved_price=Decimal("5000.00"),
            actor="seed",
        )
        print(f"Seed data inserted. Project id: {project.id}")
        for role, raw in keys.items():
            print(f"  {role:<8} Authorization: Bearer {raw}")
    finally:
        session.close()


if __name__ == "__main__":
    main()
