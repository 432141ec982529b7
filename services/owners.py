from sqlalchemy import select

from database import TransactionManager
from errors import OwnerNotFound
from models import User


class UserRepository:
    """Owner repository for user media slots. Reads take a row lock."""

    def __init__(self, tx: TransactionManager):
        self.tx = tx

    def lock_and_find_by_id(self, user_id: int) -> User:
        def work(session):
            stmt = select(User).where(User.id == user_id).with_for_update()
            user = session.scalars(stmt).one_or_none()
            if user is None:
                raise OwnerNotFound(f"user {user_id} not found")
            return user

        return self.tx.transactional(work)

    def save(self, user: User) -> None:
        def work(session):
            session.add(user)
            session.flush()

        self.tx.transactional(work)
