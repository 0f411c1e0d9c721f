"""Bootstrap an admin user and an admin API key for a fresh database."""
from sqlalchemy import select

from marketpay.db import get_sessionmaker, init_engine
from marketpay.models.api_key import ApiKey, ApiScope
from marketpay.models.user import User, UserRole
from marketpay.utils.apikey import gen_key


def main() -> None:
    init_engine()
    db = get_sessionmaker()()
    try:
        admin = db.scalars(select(User).where(User.username == "admin")).first()
        if admin is None:
            admin = User(username="admin", email="admin@marketpay.local", role=UserRole.ADMIN)
            db.add(admin)
            db.flush()

        raw_token, prefix, key_hash = gen_key()
        api_key = ApiKey(
            name=f"admin-bootstrap-{prefix}",
            prefix=prefix,
            key_hash=key_hash,
            scope=ApiScope.admin,
            user_id=admin.id,
            is_active=True,
        )
        db.add(api_key)
        db.commit()
        db.refresh(api_key)

        print("Admin API key created; it will not be shown again.")
        print(f"    Authorization: Bearer {raw_token}")
        print(f"(DB id: {api_key.id}, user id: {admin.id}, scope: {api_key.scope.value})")
    finally:
        db.close()


if __name__ == "__main__":
    main()
