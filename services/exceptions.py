from typing import Iterable, List


class RaffleError(ValueError):
    """Base class for business failures; routes turn these into HTTP errors."""

    status_code = 400

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message())

    def default_message(self) -> str:
        return "Raffle operation failed"


class ValidationFailed(RaffleError):
    status_code = 400


class RaffleNotFound(RaffleError):
    status_code = 404

    def default_message(self) -> str:
        return "Raffle not found"


class TicketNotFound(RaffleError):
    status_code = 404

    def default_message(self) -> str:
        return "Ticket not found"


class NotRaffleCreator(RaffleError):
    status_code = 403

    def default_message(self) -> str:
        return "Only the raffle creator can perform this action"


class RaffleNotActive(RaffleError):
    status_code = 409

    def default_message(self) -> str:
        return "Raffle is not active"


class RaffleAlreadyCompleted(RaffleNotActive):
    def default_message(self) -> str:
        return "Raffle is already completed"


class RaffleHasSoldTickets(RaffleError):
    status_code = 409

    def default_message(self) -> str:
        return "Cannot delete a raffle that already has sold tickets"


class TicketUnavailable(RaffleError):
    status_code = 409

    def __init__(self, numbers: Iterable[int]):
        self.numbers: List[int] = sorted(numbers)
        super().__init__(
            f"The following tickets are not available: {', '.join(map(str, self.numbers))}"
        )


class WebhookRejected(RaffleError):
    status_code = 400

    def default_message(self) -> str:
        return "Webhook rejected"


class GatewayError(RaffleError):
    status_code = 502

    def default_message(self) -> str:
        return "Payment gateway error"


class SettlementPersistenceError(RaffleError):
    """A verified, paid event could not be persisted after all retries."""

    status_code = 500

    def default_message(self) -> str:
        return "Failed to persist a confirmed payment"


class AnomalyNotFound(RaffleError):
    status_code = 404

    def default_message(self) -> str:
        return "Settlement anomaly not found or already resolved"


class AuthenticationFailed(RaffleError):
    status_code = 401

    def default_message(self) -> str:
        return "Could not validate credentials"


class AdminRequired(RaffleError):
    status_code = 403

    def default_message(self) -> str:
        return "Admin access required"
