"""Signup and login over the hub link.

Thin wrapper around the user store; credentials are never logged.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import RNS

from .constants import B_ACCT_NAME, B_ACCT_USER_ID, T_LOGIN_OK, T_SIGNUP_OK
from .errors import PersistenceError
from .store import UserExistsError

if TYPE_CHECKING:
    from .service import HubService


class AccountService:
    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rdmd.accounts")

    def signup(self, link: RNS.Link, username: str, password: str) -> bool:
        hub = self.hub
        if not hub.config.allow_signup:
            hub.message_helper.send_error(link, "signup disabled")
            return False

        try:
            user = hub.user_store.create_user(username, password)
        except UserExistsError:
            hub.message_helper.send_error(link, "username already exists")
            return False
        except PersistenceError as e:
            self.log.error("Signup failed username=%r err=%s", username, e)
            hub.message_helper.send_error(link, "failed to create user")
            return False

        hub.stats_manager.inc("signups")
        hub.message_helper.send(
            link, T_SIGNUP_OK, {B_ACCT_USER_ID: user.user_id, B_ACCT_NAME: user.username}
        )
        return True

    def login(self, link: RNS.Link, username: str, password: str) -> bool:
        hub = self.hub
        try:
            user = hub.user_store.verify_credentials(username, password)
        except PersistenceError as e:
            self.log.error("Login failed username=%r err=%s", username, e)
            hub.message_helper.send_error(link, "failed to log in")
            return False

        if user is None:
            self.log.info(
                "Login rejected username=%r link_id=%s", username, hub._fmt_link_id(link)
            )
            hub.message_helper.send_error(link, "invalid credentials")
            return False

        hub.stats_manager.inc("logins")
        hub.message_helper.send(
            link, T_LOGIN_OK, {B_ACCT_USER_ID: user.user_id, B_ACCT_NAME: user.username}
        )
        return True
