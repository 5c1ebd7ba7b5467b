class RollcallError(Exception):
    """
    Base exception for Rollcall.

    `kind` and `public_message` are what a client gets to see. The exception's own
    message is for server-side logs only, so it may name the exact check that failed.
    """
    kind = "InternalError"
    status_code = 500
    public_message = "An unexpected error occurred."


class InvalidCredentialsError(RollcallError):
    """Raised on login failure, for both unknown identifiers and wrong passwords."""
    kind = "InvalidCredentials"
    status_code = 401
    public_message = "Invalid credentials"


class InvalidTicketError(RollcallError):
    """Raised when a login ticket is malformed, expired, forged or issued for another stage."""
    kind = "InvalidTicket"
    status_code = 401
    public_message = "Invalid or expired login ticket"


class UnknownUserError(InvalidTicketError):
    """Raised when a valid ticket names a user that no longer exists. Reported like any other bad ticket."""
    pass


class NoChallengePendingError(RollcallError):
    kind = "NoChallengePending"
    status_code = 400
    public_message = "No WebAuthn challenge pending. Please start again."


class MalformedPayloadError(RollcallError):
    """Raised when a ceremony response is structurally broken (missing or undecodable fields)."""
    kind = "MalformedPayload"
    status_code = 400
    public_message = "Malformed WebAuthn payload"


class VerificationFailedError(RollcallError):
    """Raised for any signature, origin, RP ID, challenge or counter mismatch."""
    kind = "VerificationFailed"
    status_code = 401
    public_message = "WebAuthn verification failed"


class InvalidCredentialDataError(RollcallError):
    """Raised when a verified attestation yields an empty or unusable credential."""
    kind = "InvalidCredentialData"
    status_code = 400
    public_message = "Authenticator returned invalid credential data"


class InvalidStoredCredentialError(RollcallError):
    """Raised when a stored credential row is corrupt (empty id or public key)."""
    kind = "InvalidStoredCredential"
    status_code = 400
    public_message = "Stored credential is invalid. Please contact an administrator."


class CredentialNotFoundError(RollcallError):
    kind = "CredentialNotFound"
    status_code = 404
    public_message = "Credential not found"


class NoCredentialsRegisteredError(RollcallError):
    kind = "NoCredentialsRegistered"
    status_code = 404
    public_message = "No registered device found. Please register a device first."


class NoUsableDeviceError(RollcallError):
    kind = "NoUsableDevice"
    status_code = 403
    public_message = "No registered device found. Please contact an administrator."


class UserAlreadyExistsError(RollcallError):
    """Raised when trying to register a user that already exists."""
    kind = "UserAlreadyExists"
    status_code = 409
    public_message = "Account already exists for this email or identifier"


class InvalidEmailError(RollcallError):
    """Raised when an email address is invalid or outside the institutional domains."""
    kind = "InvalidEmail"
    status_code = 400
    public_message = "Email must use institutional domain"
