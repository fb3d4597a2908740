"""Domain exceptions raised by the service layer."""


class RideServiceError(Exception):
    """Base class; carries the HTTP status the API maps it to."""

    status_code = 400
    default_detail = "Request could not be completed."

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class RideNotFoundError(RideServiceError):
    """Raised when a ride cannot be found."""
    status_code = 404
    default_detail = "Ride not found."


class DriverProfileNotFoundError(RideServiceError):
    """Raised when a driver has no driver profile yet."""
    status_code = 404
    default_detail = "Driver profile not found."


class InvalidTransitionError(RideServiceError):
    """Raised when the ride's current status is not a valid predecessor."""
    status_code = 409


class RideAlreadyTakenError(InvalidTransitionError):
    """Raised when another driver accepted the ride first."""
    default_detail = "Ride has already been accepted by another driver."


class ActiveRideExistsError(RideServiceError):
    """Raised when a customer already has an active ride."""
    status_code = 409
    default_detail = "You already have an active ride request."


class DriverBusyError(RideServiceError):
    """Raised when a driver already has an accepted or in-progress ride."""
    status_code = 409
    default_detail = "You already have an active ride."


class DriverUnavailableError(RideServiceError):
    """Raised when an offline driver tries to take a ride."""
    status_code = 409
    default_detail = "Driver must be online to accept rides."


class RoleAlreadyAssignedError(RideServiceError):
    """Raised when a user tries to change an already assigned role."""
    status_code = 409
    default_detail = "Role has already been assigned and cannot be changed."


class RoleRequiredError(RideServiceError):
    """Raised when the caller lacks the role an operation requires."""
    status_code = 403
    default_detail = "Role selection required."


class NotRideParticipantError(RideServiceError):
    """Raised when the caller is neither the ride's customer nor its driver."""
    status_code = 403
    default_detail = "You do not have access to this ride."


class ProfileNotFoundError(RideServiceError):
    """Raised when a signed-in identity has no user profile."""
    status_code = 404
    default_detail = "User profile not found; sign in again."
