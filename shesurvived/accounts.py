import logging
import re
from typing import List, Optional

from shesurvived.auth import get_password_hash, verify_password
from shesurvived.errors import RecordNotFound, ValidationFailed
from shesurvived.models import ProfileUpdate, User, UserCreate
from shesurvived.repository import Repository, to_timestamp, utc_now

logger = logging.getLogger("shesurvived.accounts")

BRACELET_CODE = re.compile(r"^[A-Za-z0-9]{8}$")


class AccountService:
    def __init__(self, repository: Repository):
        self.repository = repository

    async def register(self, form: UserCreate) -> User:
        if not all([form.full_name, form.email, form.phone_number, form.city, form.password, form.confirm_password]):
            raise ValidationFailed("Please fill in all fields")
        if form.password != form.confirm_password:
            raise ValidationFailed("Passwords do not match")

        async with self.repository.locked():
            users = await self.repository.list_users()
            if any(u.email == form.email for u in users):
                raise ValidationFailed("Email already registered")
            user = User(
                id=_new_user_id(users),
                full_name=form.full_name,
                email=form.email,
                phone_number=form.phone_number,
                city=form.city,
                password=get_password_hash(form.password),
                has_bracelet=False,
                trusted_contacts=[],
                trusted_by=[],
            )
            users.append(user)
            await self.repository.save_users(users)
            await self.repository.set_session_user(user)
        logger.info(f"Registered user {user.id}")
        return user

    async def login(self, email: str, password: str) -> User:
        if not email or not password:
            raise ValidationFailed("Please fill in all fields")
        user = await self.repository.find_user_by_email(email)
        if user is None:
            raise ValidationFailed("User not found")
        if not verify_password(password, user.password):
            raise ValidationFailed("Invalid password")
        await self.repository.set_session_user(user)
        return user

    async def logout(self):
        await self.repository.clear_session()

    async def require(self, user_id: str) -> User:
        user = await self.repository.get_user(user_id)
        if user is None:
            raise RecordNotFound(f"User {user_id} not found", redirect_to="/api/login")
        return user

    async def select_bracelet(self, user: User, has_bracelet: bool) -> User:
        async with self.repository.locked():
            user = (await self.require(user.id)).model_copy(update={"has_bracelet": has_bracelet})
            await self.repository.save_user(user)
        return user

    async def verify_bracelet(self, user: User, code: str) -> User:
        code = (code or "").strip().upper()
        if not code:
            raise ValidationFailed("Please enter your bracelet code")
        if not BRACELET_CODE.match(code):
            raise ValidationFailed(
                "Invalid bracelet code format. Please enter the 8-character code from your bracelet"
            )
        async with self.repository.locked():
            user = (await self.require(user.id)).model_copy(update={
                "bracelet_verified": True,
                "bracelet_code": code,
                "bracelet_verified_at": to_timestamp(utc_now()),
            })
            await self.repository.save_user(user)
        logger.info(f"Bracelet verified for user {user.id}")
        return user

    async def update_profile(self, user: User, changes: ProfileUpdate) -> User:
        update = changes.model_dump(exclude_none=True)
        async with self.repository.locked():
            current = await self.require(user.id)
            if "email" in update and update["email"] != current.email:
                if not update["email"]:
                    raise ValidationFailed("Please fill in all fields")
                if await self.repository.find_user_by_email(update["email"]) is not None:
                    raise ValidationFailed("Email already registered")
            user = current.model_copy(update=update)
            await self.repository.save_user(user)
        return user

    async def search_users(self, user: User, term: str = "") -> List[User]:
        user = await self.require(user.id)
        term = (term or "").strip().lower()
        results = []
        for candidate in await self.repository.list_users():
            if candidate.id == user.id or candidate.id in user.trusted_contacts:
                continue
            if term and term not in candidate.full_name.lower() and term not in candidate.email.lower():
                continue
            results.append(candidate)
        return results

    async def add_trusted_contact(self, user: User, contact_id: str) -> User:
        """Link both sides in one write: contact joins trustedContacts, user joins the contact's trustedBy."""
        if contact_id == user.id:
            raise ValidationFailed("You cannot add yourself as a trusted contact")
        async with self.repository.locked():
            users = await self.repository.list_users()
            owner = _find(users, user.id)
            contact = _find(users, contact_id)
            if owner is None or contact is None:
                raise RecordNotFound(f"Contact {contact_id} not found", redirect_to="/api/contacts")
            if contact_id not in owner.trusted_contacts:
                owner.trusted_contacts.append(contact_id)
            if owner.id not in contact.trusted_by:
                contact.trusted_by.append(owner.id)
            await self._save_pair(users, owner)
        logger.info(f"User {owner.id} now trusts {contact_id}")
        return owner

    async def remove_trusted_contact(self, user: User, contact_id: str) -> User:
        async with self.repository.locked():
            users = await self.repository.list_users()
            owner = _find(users, user.id)
            if owner is None:
                raise RecordNotFound(f"User {user.id} not found", redirect_to="/api/login")
            owner.trusted_contacts = [i for i in owner.trusted_contacts if i != contact_id]
            contact = _find(users, contact_id)
            if contact is not None:
                contact.trusted_by = [i for i in contact.trusted_by if i != owner.id]
            await self._save_pair(users, owner)
        logger.info(f"User {owner.id} no longer trusts {contact_id}")
        return owner

    async def trusted_contacts(self, user: User) -> List[User]:
        user = await self.require(user.id)
        return [u for u in await self.repository.list_users() if u.id in user.trusted_contacts]

    async def trusted_by(self, user: User) -> List[User]:
        user = await self.require(user.id)
        return [u for u in await self.repository.list_users() if u.id in user.trusted_by]

    async def _save_pair(self, users: List[User], owner: User):
        await self.repository.save_users(users)
        session_user = await self.repository.get_session_user()
        if session_user is not None and session_user.id == owner.id:
            await self.repository.set_session_user(owner)


def _find(users: List[User], user_id: str) -> Optional[User]:
    for user in users:
        if user.id == user_id:
            return user
    return None


def _new_user_id(users: List[User]) -> str:
    taken = {u.id for u in users}
    candidate = int(utc_now().timestamp() * 1000)
    while str(candidate) in taken:
        candidate += 1
    return str(candidate)
