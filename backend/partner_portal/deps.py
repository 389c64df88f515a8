"""FastAPI dependencies.

  get_onboarding_service  → the process-wide OnboardingService built in the
                            app lifespan (tests override this dependency)
"""

from fastapi import Request

from partner_portal.onboarding.service import OnboardingService


def get_onboarding_service(request: Request) -> OnboardingService:
    return request.app.state.onboarding
