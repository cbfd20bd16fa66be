import sys
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def set_admin_pin(repo, pin: str = "Admin#1234") -> str:
    from shopdesk.repositories.sqlite_repo import SqliteRepository

    conn = repo._conn()
    cur = conn.cursor()
    cur.execute(
        "UPDATE users SET pin=?, must_change_pin=0 WHERE email='admin@localhost'",
        (SqliteRepository._hash_pin(pin),),
    )
    conn.commit()
    conn.close()
    return pin


def make_repo(tmp_path: Path, name: str = "shop.db"):
    from shopdesk.repositories.sqlite_repo import SqliteRepository

    repo = SqliteRepository(tmp_path / name)
    repo.init_db()
    return repo


def admin_of(repo):
    return next(u for u in repo.list_users() if u.email == "admin@localhost")


def make_user(repo, email: str = "clerk@shop.local", pin: str = "Clerk#1234"):
    uid = repo.create_user(email, pin, "user")
    return repo.get_user_by_id(uid)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now
