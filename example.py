"""Local ticketdesk demo.

``python example.py`` boots an in-memory ticketdesk on Granian with one demo
organization (``acme``) and its owner already signed up.  The owner's session
token is printed on startup; send it as ``Authorization: Bearer <token>``.

Tenant hosts look like ``acme.local.test``.  Override ``TICKETDESK_ROOT_DOMAIN``
to match your environment, or point ``TICKETDESK_REST_URL`` and
``TICKETDESK_REST_API_KEY`` at a PostgREST backend instead of memory.
"""

from __future__ import annotations

import logging
import os

from ticketdesk import AppConfig, Membership, Organization, Repository, Role, TicketdeskApp, User, create_app
from ticketdesk.server import ServerConfig, run

logger = logging.getLogger("ticketdesk.example")

DEMO_SUBDOMAIN = "acme"
DEMO_OWNER_EMAIL = "owner@acme.test"


async def seed_demo(app: TicketdeskApp) -> str:
    """Create the demo organization and owner; return the owner's session token."""

    users = Repository(app.store, User)
    organizations = Repository(app.store, Organization)
    owner = await users.get(email=DEMO_OWNER_EMAIL)
    if owner is None:
        owner = await users.insert(User(email=DEMO_OWNER_EMAIL, full_name="Demo Owner"))
    if await organizations.get(subdomain=DEMO_SUBDOMAIN) is None:
        organization = await organizations.insert(Organization(name="Acme Support", subdomain=DEMO_SUBDOMAIN))
        await Repository(app.store, Membership).insert(
            Membership(organization_id=organization.id, user_id=owner.id, role=Role.OWNER)
        )
    issued = await app.authenticator.issue(owner)
    return issued.token


def build_demo_app() -> TicketdeskApp:
    config = AppConfig.from_env()
    if not os.getenv("TICKETDESK_ROOT_DOMAIN"):
        config = AppConfig(root_domain="local.test", rest_store=config.rest_store)
    app = create_app(config)

    @app.on_startup
    async def announce() -> None:
        token = await seed_demo(app)
        logger.info(
            "demo organization at %s; owner token %s",
            app.config.organization_host(DEMO_SUBDOMAIN),
            token,
        )

    return app


def main() -> None:
    """Boot the Granian development server."""

    logging.basicConfig(level=logging.INFO)
    app = build_demo_app()
    config = ServerConfig(
        host=os.getenv("TICKETDESK_HOST", "127.0.0.1"),
        port=int(os.getenv("TICKETDESK_PORT", "8443")),
        profile=os.getenv("TICKETDESK_PROFILE", "development"),
    )
    run(app, config)


if __name__ == "__main__":
    main()
