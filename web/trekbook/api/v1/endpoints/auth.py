import logging

from fastapi import APIRouter

from trekbook.api.v1.endpoints.helpers import checkout_view
from trekbook.api.v1.schemas.checkout_schemas import AuthCallbackIn, AuthCallbackOut
from trekbook.core import ExternalServiceError, VerificationError
from trekbook.deps import CheckoutDep, ClientIdDep, ComponentsDep
from trekbook.infrastructure.events import AuthenticatedEvent


router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/callback", response_model=AuthCallbackOut)
async def auth_callback(
    payload: AuthCallbackIn,
    components: ComponentsDep,
    client_id: ClientIdDep,
    machine: CheckoutDep,
):
    """Magic-link return: resolve the session and announce the sign-in.

    The tab that opened the link is registered before the event is published,
    so it competes with the original tab for the transition.
    """
    try:
        user = await components.identity_provider.get_user(payload.access_token)
    except ExternalServiceError as exc:
        logger.info("Rejected auth callback for client %s: %s", client_id, exc.reason)
        raise VerificationError("This sign-in link is invalid or has expired. Please request a new code.") from exc

    event = AuthenticatedEvent(user=user, client_id=client_id)
    await components.publish_event(event)
    # Relay delivery is asynchronous; handle the event in this tab before responding
    await machine.on_authenticated(event)
    return AuthCallbackOut(user_id=user.id, email=user.email, checkout=checkout_view(machine))
