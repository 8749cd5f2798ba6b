from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from workerfleet.app.core.errors import StoreError
from workerfleet.app.models.account import Account


class AccountStore:
    """Read access to stored Cloudflare credentials."""

    def __init__(self, engine):
        self.engine = engine

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                return session.get(Account, account_id)
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    def create_account(self, account: Account) -> Account:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                session.add(account)
                session.commit()
                session.refresh(account)
                return account
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e
