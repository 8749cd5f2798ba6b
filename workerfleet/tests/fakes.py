import asyncio

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from workerfleet.app.core.db import enable_sqlite_foreign_keys
from workerfleet.app.core.errors import NotFoundError, RemoteError
from workerfleet.app.models.account import Account


def make_engine():
    import workerfleet.app.models.account  # noqa: F401
    import workerfleet.app.models.audit  # noqa: F401
    import workerfleet.app.models.job  # noqa: F401

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    enable_sqlite_foreign_keys(engine)
    SQLModel.metadata.create_all(engine)
    return engine


def seed_accounts(account_store, *account_ids):
    for account_id in account_ids:
        account_store.create_account(Account(
            id=account_id,
            name=f"Account {account_id}",
            auth_type="token",
            cf_account_id=f"cf-{account_id}",
            api_token="token",
            subdomain=f"sub-{account_id}",
        ))


class FakePlatform:
    """In-memory stand-in for Cloudflare, shared by every client it hands out."""

    def __init__(self, delay=0.01):
        self.delay = delay
        self.delays = {}  # account_id -> delay override
        self.workers = {}  # account_id -> {name: worker dict}
        self.failures = {}  # (account_id, method) -> message
        self.calls = []  # (account_id, method, args)
        self.probe = None  # called before every remote call

    def add_worker(self, account_id, name):
        self.workers.setdefault(account_id, {})[name] = {
            "id": name,
            "created_on": "2024-01-01T00:00:00Z",
            "modified_on": "2024-01-02T00:00:00Z",
            "etag": f"etag-{name}",
        }

    def fail(self, account_id, method, message="remote failure"):
        self.failures[(account_id, method)] = message

    def heal(self):
        self.failures.clear()

    def calls_for(self, method):
        return [c for c in self.calls if c[1] == method]

    def client_for(self, account):
        return FakeWorkersClient(self, account)


class FakeWorkersClient:
    def __init__(self, platform, account):
        self.platform = platform
        self.account = account

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def _call(self, method, *args):
        account_id = self.account.id
        self.platform.calls.append((account_id, method, args))
        if self.platform.probe is not None:
            self.platform.probe()
        await asyncio.sleep(self.platform.delays.get(account_id, self.platform.delay))
        message = self.platform.failures.get((account_id, method))
        if message is not None:
            raise RemoteError(message)

    @property
    def _workers(self):
        return self.platform.workers.setdefault(self.account.id, {})

    async def create_worker(self, name):
        await self._call("create_worker", name)
        if name in self._workers:
            raise RemoteError(f"10021: worker {name} already exists")
        self.platform.add_worker(self.account.id, name)
        return name

    async def upload_script(self, worker_id, name, script, compatibility_date=None, bindings=None):
        await self._call("upload_script", worker_id, name, script)
        return f"version-{name}"

    async def deploy(self, name, version_id):
        await self._call("deploy", name, version_id)
        return f"deployment-{name}"

    async def list_workers(self):
        await self._call("list_workers")
        return list(self._workers.values())

    async def delete_worker(self, worker_id):
        await self._call("delete_worker", worker_id)
        if worker_id not in self._workers:
            raise NotFoundError(f"Worker {worker_id} not found")
        del self._workers[worker_id]

    async def get_subdomain(self):
        await self._call("get_subdomain")
        return self.account.subdomain

    async def health_check(self):
        await self._call("health_check")
        return {"healthy": True}
