"""Errors raised by the gateway client.

Every error records the stage that failed and, when a remote participant
(peer, orderer or certificate authority) produced the failure, its message
verbatim in ``remote_message``.
"""

STAGE_IDENTITY = 'identity'
STAGE_ENROLLMENT = 'enrollment'
STAGE_TOPOLOGY = 'topology'
STAGE_CONNECTION = 'connection'
STAGE_PROPOSE = 'propose'
STAGE_ENDORSE = 'endorse'
STAGE_ORDER = 'order'
STAGE_COMMIT = 'commit'


class FabricError(Exception):
    default_stage = None

    def __init__(self, message, stage=None, remote_message=None, tx_id=None):
        super(FabricError, self).__init__(message)
        self.message = message
        self.stage = stage or self.default_stage
        self.remote_message = remote_message
        self.tx_id = tx_id

    def __str__(self):
        text = f'[{self.stage}] {self.message}'
        if self.remote_message and self.remote_message not in self.message:
            text += f': {self.remote_message}'
        return text


class IdentityNotFoundError(FabricError):
    default_stage = STAGE_IDENTITY


class DuplicateIdentityError(FabricError):
    default_stage = STAGE_IDENTITY


class AuthorizationError(FabricError):
    default_stage = STAGE_ENROLLMENT


class AlreadyRegisteredError(FabricError):
    default_stage = STAGE_ENROLLMENT


class EnrollmentError(FabricError):
    default_stage = STAGE_ENROLLMENT


class TopologyUnavailableError(FabricError):
    default_stage = STAGE_TOPOLOGY


class FabricConnectionError(FabricError):
    default_stage = STAGE_CONNECTION


class EvaluationError(FabricError):
    default_stage = STAGE_PROPOSE


class EndorsementError(FabricError):
    default_stage = STAGE_ENDORSE


class EndorsementMismatchError(EndorsementError):
    """Endorsers succeeded but returned different read/write sets."""


class SubmitError(FabricError):
    default_stage = STAGE_ORDER


class CommitTimeoutError(FabricError):
    """The commit wait elapsed; the ledger outcome of ``tx_id`` is unknown."""
    default_stage = STAGE_COMMIT


class CommitRejectedError(FabricError):
    default_stage = STAGE_COMMIT

    def __init__(self, message, validation_code=None, **kwargs):
        super(CommitRejectedError, self).__init__(message, **kwargs)
        self.validation_code = validation_code
