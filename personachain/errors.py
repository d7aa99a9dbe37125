"""Typed failures raised by the ledger, store, provisioning and chat layers."""

from typing import Any, Dict, List, Optional, Sequence


class PersonaChainError(Exception):
    """Base class for every error this package raises on purpose."""


class ValidationError(PersonaChainError):
    """Malformed identifier or payload, detected before any network I/O."""


class NetworkError(PersonaChainError):
    """The ledger node or content store could not be reached."""


class LedgerRejection(PersonaChainError):
    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        name: Optional[str] = None,
        details: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.name = name or ""
        self.details = details or []

    @property
    def already_exists(self) -> bool:
        if self.name == "account_name_exists_exception":
            return True
        lowered = self.message.lower()
        return "already taken" in lowered or "already exists" in lowered


class AccountExistsError(LedgerRejection):
    """The account-creation step hit a name that is already on the ledger."""


class NotFoundError(PersonaChainError):
    """Content identifier still unresolvable after the retry window."""


class SigningRejected(PersonaChainError):
    """A delegated signing agent refused or was cancelled."""


class StateTransitionError(PersonaChainError):
    pass


class PollExhausted(PersonaChainError):
    """Polling gave up before the ledger recorded a response."""


class PartialProvisioningError(PersonaChainError):
    def __init__(
        self,
        persona: str,
        *,
        completed: Sequence[str],
        failed_step: str,
        cause: BaseException,
    ) -> None:
        done = ", ".join(completed) or "none"
        super().__init__(
            f"persona {persona} partially provisioned: step {failed_step} failed "
            f"after committing [{done}]: {cause}"
        )
        self.persona = persona
        self.completed = list(completed)
        self.failed_step = failed_step
        self.cause = cause
