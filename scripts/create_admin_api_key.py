from app.db import get_sessionmaker, init_engine
from app.models.api_key import ApiKey, ApiScope
from app.utils.apikey import gen_key


def main() -> None:
    # 1) Initialise l'engine + SessionLocal à partir de la config (app.config.get_settings)
    init_engine()
    SessionLocal = get_sessionmaker()
    db = SessionLocal()

    # 2) Clé brute générée côté serveur, affichée une seule fois
    raw_token, prefix, key_hash = gen_key()

    try:
        # 3) Clé admin sans utilisateur lié : les routes d'administration l'acceptent
        api_key = ApiKey(
            name=f"admin-{prefix}",
            prefix=prefix,
            key_hash=key_hash,
            scope=ApiScope.admin,
            is_active=True,
        )
        db.add(api_key)
        db.commit()
        db.refresh(api_key)

        print("==========================================")
        print("Admin API key created")
        print("Use this key in your Authorization header:")
        print(f"    Authorization: Bearer {raw_token}")
        print(f"(DB id: {api_key.id}, scope: {api_key.scope.value})")
        print("==========================================")
    finally:
        db.close()


if __name__ == "__main__":
    main()
