"""
Marketplace terms acceptance in the destination subscription.
"""

from .azure_cli import AzureCLI
from .exceptions import TermsNotAcceptedError
from .logging import logger
from .models import VmProfile
from .security import CommandBuilder


class LicenseAcceptor:
    """Accepts marketplace terms for images that carry a purchase plan."""

    def __init__(self, az: AzureCLI):
        self.az = az

    @staticmethod
    def requires_acceptance(profile: VmProfile) -> bool:
        return profile.image.is_complete and profile.plan.is_complete

    async def accept(self, profile: VmProfile, subscription: str) -> bool:
        """
        Accept the terms for the profile's plan, if it has one.

        Returns:
            True when terms were (or already had been) accepted, False when
            the image carries no plan and nothing was done.

        Raises:
            TermsNotAcceptedError: The provider did not confirm acceptance.
        """
        if not self.requires_acceptance(profile):
            logger.debug("No marketplace plan on source image, skipping terms", stage="license")
            return False

        plan = profile.plan
        current = await self.az.run(
            CommandBuilder.terms_show(plan.publisher, plan.product, plan.name), subscription
        )
        if (current or {}).get("accepted") is True:
            logger.info(
                f"Terms for {plan.publisher}:{plan.product}:{plan.name} already accepted",
                stage="license",
            )
            return True

        logger.info(
            f"Accepting terms for {plan.publisher}:{plan.product}:{plan.name}",
            stage="license",
        )
        response = await self.az.run(
            CommandBuilder.terms_accept(plan.publisher, plan.product, plan.name), subscription
        )
        if (response or {}).get("accepted") is not True:
            raise TermsNotAcceptedError(plan.publisher, plan.product, plan.name)
        return True
