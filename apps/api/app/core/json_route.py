"""Route class that decodes JSON numbers with a fraction as Decimal.

Ledger payloads may carry amounts as bare JSON numbers. Parsed the default
way they would pass through a binary float before the normalizer sees
them; with ``parse_float=Decimal`` the literal stays exact.
"""

import json
from decimal import Decimal
from typing import Any, Callable

from fastapi import Request, Response
from fastapi.routing import APIRoute


class DecimalJSONRequest(Request):
    async def json(self) -> Any:
        if not hasattr(self, "_json"):
            body = await self.body()
            self._json = json.loads(body, parse_float=Decimal)
        return self._json


class DecimalJSONRoute(APIRoute):
    def get_route_handler(self) -> Callable:
        original_route_handler = super().get_route_handler()

        async def route_handler(request: Request) -> Response:
            request = DecimalJSONRequest(request.scope, request.receive)
            return await original_route_handler(request)

        return route_handler
