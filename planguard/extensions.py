import os
from flask_login import LoginManager, UserMixin
from supabase import create_client

# A single LoginManager instance, bound to the app in create_app()
login_manager = LoginManager()


def init_supabase(url: str | None = None, key: str | None = None):
    """Service-role Supabase client. Plan tables are written with RLS bypassed."""
    url = url or os.getenv("SUPABASE_URL")
    key = key or os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        raise RuntimeError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY")
    return create_client(url, key)


class User(UserMixin):
    # Identity only; plan state is read from the store on every check.
    def __init__(self, auth_id):
        self.id = auth_id


@login_manager.user_loader
def load_user(auth_id: str):
    return User(auth_id) if auth_id else None
