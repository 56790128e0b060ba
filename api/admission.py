"""
api/admission.py -- Admission pipeline: rate limit, then guard, per route.

Each route declares an explicit RoutePolicy record and wires it in with
Depends(admit(policy)). Routers are built with route_class=AdmissionRoute,
which finds that dependency when the route is registered and runs the policy
in front of FastAPI's own request handler: before the body is read, parsed,
or validated. A request body that is not even JSON still spends a rate-limit
hit. The dependency then hands the already-admitted Identity to the handler.

Stage order for every request (stages 1-2 live here):
  1. Rate limiter  -- RateLimitExceeded before any other work.
  2. Access guard  -- Unauthorized / Forbidden, then the CSRF check for
                      session-authenticated state changes.
  3. Validation    -- FastAPI body parsing and validation (400).
  4. Handler.
  5. Post-processing -- rate-limit headers, api/main.py middleware.
  6. Error boundary  -- api/main.py exception handlers.

Policy resolution (most specific wins):
  route-method-level RoutePolicy > route-group RoutePolicy > pipeline default.
  Build a route's policy with GROUP.override(...); unset fields fall through.

Rate-limit keys:
  address (default) -- "<scope>:addr:<client ip>"
  subject           -- "<scope>:subject:<id>" when an identity resolves, so one
                       caller cannot burn another's quota behind a shared NAT.
                       Falls back to the address when no identity resolves.
  scope defaults to "<METHOD>:<route path>", giving each route its own counter.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, fields, replace
from enum import Enum

from fastapi import Request, Response
from fastapi.dependencies.models import Dependant
from fastapi.routing import APIRoute
from slowapi.util import get_remote_address

from auth.csrf import CSRF_HEADER, verify_csrf
from auth.guards import GuardMode, IdentityResolver, IdentitySource, Resolution, guard_for
from auth.models import Identity
from auth.sessions import SESSION_COOKIE
from core.errors import RateLimitExceeded
from ratelimit.limiter import Decision, RateLimiter, RateLimitRule, address_key, subject_key

logger = logging.getLogger("gatehouse.api")


class RateKey(str, Enum):
    address = "address"
    subject = "subject"


@dataclass(frozen=True)
class RoutePolicy:
    """Admission configuration for one route or route group.

    Every field defaults to None, meaning "inherit". rate_limit is either a
    RateLimitRule, a rule name registered on the pipeline ("auth"), or limits
    notation ("5/minute"). csrf=True makes a session-authenticated request
    present the session's CSRF token (see auth/csrf.py).
    """

    guard: GuardMode | None = None
    source: IdentitySource | None = None
    skip_rate_limit: bool | None = None
    rate_limit: RateLimitRule | str | None = None
    rate_key: RateKey | None = None
    scope: str | None = None
    csrf: bool | None = None

    def override(self, **changes) -> RoutePolicy:
        """Return a route-level policy layered over this group-level one."""
        return self.merge(RoutePolicy(**changes))

    def merge(self, specific: RoutePolicy) -> RoutePolicy:
        updates = {f.name: getattr(specific, f.name) for f in fields(specific) if getattr(specific, f.name) is not None}
        return replace(self, **updates)


class AdmissionPipeline:
    """Runs the pre-handler stages for one request.

    Built once at startup with its collaborators passed in explicitly.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        resolver: IdentityResolver,
        default_rule: RateLimitRule,
        named_rules: dict[str, RateLimitRule] | None = None,
        csrf_secret: str | None = None,
    ) -> None:
        self.limiter = limiter
        self.resolver = resolver
        self.default_rule = default_rule
        self.named_rules = dict(named_rules or {})
        self.csrf_secret = csrf_secret

    def rule_for(self, policy: RoutePolicy) -> RateLimitRule:
        rule = policy.rate_limit
        if rule is None:
            return self.default_rule
        if isinstance(rule, RateLimitRule):
            return rule
        if rule in self.named_rules:
            return self.named_rules[rule]
        return RateLimitRule.parse(rule)

    async def admit(self, request: Request, policy: RoutePolicy) -> Identity | None:
        source = policy.source or IdentitySource.session
        scope = policy.scope or _route_scope(request)
        resolution: Resolution | None = None

        if policy.rate_key is RateKey.subject:
            resolution = await self._resolve(request, source)

        if not policy.skip_rate_limit:
            await self._check_rate(request, scope, self.rule_for(policy), resolution)

        mode = policy.guard or GuardMode.none
        if resolution is None:
            if mode is GuardMode.none:
                request.state.identity = None
                return None
            resolution = await self._resolve(request, source)
        identity = guard_for(mode).decide(resolution)
        if policy.csrf and identity is not None and identity.session_id is not None:
            verify_csrf(self.csrf_secret, identity.session_id, request.headers.get(CSRF_HEADER))
        request.state.identity = identity
        return identity

    async def _resolve(self, request: Request, source: IdentitySource) -> Resolution:
        return await self.resolver.resolve(
            source,
            session_cookie=request.cookies.get(SESSION_COOKIE),
            authorization=request.headers.get("Authorization"),
        )

    async def _check_rate(
        self,
        request: Request,
        scope: str,
        rule: RateLimitRule,
        resolution: Resolution | None,
    ) -> Decision:
        if resolution is not None and resolution.identity is not None:
            key = subject_key(scope, resolution.identity.subject_id)
        else:
            key = address_key(scope, get_remote_address(request))
        decision = await self.limiter.allow_rule(key, rule)
        request.state.rate_limit = decision
        if not decision.admitted:
            raise RateLimitExceeded(key, rule.limit, decision.retry_after(self.limiter.now()))
        return decision


def build_pipeline(settings, limiter: RateLimiter, resolver: IdentityResolver) -> AdmissionPipeline:
    """Assemble the pipeline with the configured default and "auth" rules."""
    return AdmissionPipeline(
        limiter=limiter,
        resolver=resolver,
        default_rule=RateLimitRule.parse(settings.default_rate_limit),
        named_rules={"auth": RateLimitRule.parse(settings.auth_rate_limit)},
        csrf_secret=settings.secret_key,
    )


def _route_scope(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None) or request.url.path
    return f"{request.method}:{path}"


def admit(policy: RoutePolicy) -> Callable[[Request], Awaitable[Identity | None]]:
    """Return a FastAPI dependency that admits requests under policy.

    Use as a route dependency:
        @router.get("/me")
        async def me(identity: Identity = Depends(admit(ME))): ...

    On an AdmissionRoute the policy has already run by the time FastAPI
    resolves dependencies, so this only returns the admitted identity. On a
    plain APIRoute it runs the pipeline itself.
    """

    async def admission(request: Request) -> Identity | None:
        if getattr(request.state, "admitted", False):
            return request.state.identity
        pipeline: AdmissionPipeline = request.app.state.pipeline
        return await pipeline.admit(request, policy)

    admission.policy = policy
    return admission


def _find_policy(dependant: Dependant) -> RoutePolicy | None:
    for sub in dependant.dependencies:
        policy = getattr(sub.call, "policy", None)
        if isinstance(policy, RoutePolicy):
            return policy
    return None


class AdmissionRoute(APIRoute):
    """APIRoute that runs its admission policy before the request body is touched.

    Usage:
        router = APIRouter(route_class=AdmissionRoute)
    """

    def get_route_handler(self) -> Callable[[Request], Awaitable[Response]]:
        # Called from APIRoute.__init__ once self.dependant is built.
        handler = super().get_route_handler()
        policy = _find_policy(self.dependant)
        if policy is None:
            return handler

        async def admitted_handler(request: Request) -> Response:
            pipeline: AdmissionPipeline = request.app.state.pipeline
            await pipeline.admit(request, policy)
            request.state.admitted = True
            return await handler(request)

        return admitted_handler


def apply_rate_limit_headers(response, decision: Decision, now: float) -> None:
    """Post-processing: expose the limiter's view of this key to the client."""
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    response.headers["X-RateLimit-Reset"] = str(max(int(decision.reset_at - now), 0))
