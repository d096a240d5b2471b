"""
Page-session state consulted by the request gateway.

The browser keeps these as ambient globals (``localStorage``,
``navigator.onLine``, ``window.location``); here each one is an explicit
object owned by a single page session and handed to the gateway.
"""

from typing import Any, Dict, List, Optional

from shared.logging import get_logger

STAFF_ROLES = ("admin", "staff")


class AuthState:
    """Locally remembered user record for the current session."""

    def __init__(self):
        self.logger = get_logger("gateway.auth_state")
        self._user: Optional[Dict[str, Any]] = None

    def set_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """Remember only the fields the UI needs.

        Contract customers keep the ids of the products they may order,
        never the prices attached to them.
        """
        customer = user.get("customer")
        safe_customer: Optional[Dict[str, Any]] = None
        if customer:
            safe_customer = {
                "_id": customer.get("_id"),
                "name": customer.get("name"),
                "pricingType": customer.get("pricingType"),
            }
            contract_prices = customer.get("contractPrices")
            if customer.get("pricingType") == "contract" and contract_prices:
                safe_customer["allowedProducts"] = list(contract_prices.keys())

        self._user = {
            "id": user.get("id"),
            "name": user.get("name"),
            "email": user.get("email"),
            "role": user.get("role"),
            "customer": safe_customer,
            "isMagicLink": bool(user.get("isMagicLink", False)),
        }
        return self._user

    def get_user(self) -> Optional[Dict[str, Any]]:
        return self._user

    def is_logged_in(self) -> bool:
        return self._user is not None

    @property
    def role(self) -> Optional[str]:
        return self._user["role"] if self._user else None

    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def is_customer(self) -> bool:
        return self.role == "customer"

    def clear(self) -> None:
        """Forget the user (logout or expired session)."""
        if self._user is not None:
            self.logger.info("Cleared local auth state", user_id=self._user.get("id"))
        self._user = None


class Connectivity:
    """Network connectivity signal for the session."""

    def __init__(self, online: bool = True):
        self.logger = get_logger("gateway.connectivity")
        self._online = online

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        if online:
            self.logger.info("Connection restored")
        else:
            self.logger.warning("Connection lost")


class Navigator:
    """Records page navigations requested by the gateway."""

    def __init__(self):
        self.logger = get_logger("gateway.navigator")
        self.history: List[str] = []

    def navigate(self, path: str) -> None:
        self.logger.info("Navigating", path=path)
        self.history.append(path)

    @property
    def current(self) -> Optional[str]:
        return self.history[-1] if self.history else None
