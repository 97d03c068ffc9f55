class GatewayError(Exception):
    pass


class ValidationError(GatewayError):
    pass


class UnknownVerificationType(ValidationError):
    pass


class StateConflict(GatewayError):
    pass


class NoPendingRewards(StateConflict):
    pass


class NoOpenRequest(StateConflict):
    pass


class NotReady(StateConflict):
    pass


class NotFound(GatewayError):
    pass


class RequestNotFound(NotFound):
    pass


class AccessDenied(GatewayError):
    pass


class ConsistencyFault(GatewayError):
    pass


class InsufficientPendingBalance(ConsistencyFault):
    pass


class SettlementFailure(GatewayError):
    def __init__(self, message: str, request_id=None, retry_scheduled: bool = False):
        super().__init__(message)
        self.request_id = request_id
        self.retry_scheduled = retry_scheduled


class PaymentSchedulingError(GatewayError):
    pass


class NotificationError(GatewayError):
    pass
