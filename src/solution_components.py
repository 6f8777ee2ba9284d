"""
Solution Membership Service.

Attaches components to a named, non-default solution. Idempotent: a
component already in the solution is left alone. Required components are
never pulled in with it.
"""

import logging
from typing import Optional

from dataverse import DataverseClient, build_filter, odata_string
from errors import NotFoundFault
from models import SolutionComponentType, normalize_guid

logger = logging.getLogger(__name__)

DEFAULT_SOLUTION_NAME = "Default"


class SolutionComponentService:
    """Ensures components belong to a solution."""

    def __init__(
        self,
        client: DataverseClient,
        default_solution_name: str = DEFAULT_SOLUTION_NAME,
    ):
        self.client = client
        self.default_solution_name = default_solution_name

    def is_default_solution(self, solution_name: Optional[str]) -> bool:
        """True when the name denotes the environment's default solution."""
        if not solution_name:
            return False
        return solution_name.strip().lower() == self.default_solution_name.lower()

    async def ensure_in_solution(
        self,
        component_id: str,
        component_type: SolutionComponentType,
        solution_name: Optional[str],
    ) -> bool:
        """
        Add a component to a solution unless it is already there.

        Args:
            component_id: Id of the component (braces are stripped)
            component_type: Solution component type code
            solution_name: Unique name of the target solution

        Returns:
            True if an AddSolutionComponent call was issued, False for a no-op.

        Raises:
            NotFoundFault: If the solution does not exist.
            RemoteFault: If a request fails. Not retried.
        """
        if not solution_name or not solution_name.strip():
            return False
        if self.is_default_solution(solution_name):
            logger.debug(f"Skipping solution attach for default solution {solution_name}")
            return False

        solution_id = await self.get_solution_id(solution_name)
        if not solution_id:
            raise NotFoundFault(
                f"Solution {solution_name} not found.",
                entity="solution",
                key=solution_name,
            )

        normalized_id = normalize_guid(component_id)
        if await self._is_component_in_solution(normalized_id, component_type, solution_id):
            logger.debug(
                f"Component {normalized_id} already in solution {solution_name}"
            )
            return False

        await self.client.post(
            "AddSolutionComponent",
            {
                "ComponentId": normalized_id,
                "ComponentType": component_type.value,
                "SolutionUniqueName": solution_name,
                "AddRequiredComponents": False,
            },
        )
        logger.info(
            f"Added component {normalized_id} (type {component_type.value}) "
            f"to solution {solution_name}"
        )
        return True

    async def get_solution_id(self, solution_name: str) -> Optional[str]:
        """Resolve a solution's id from its unique name."""
        rows = await self.client.get_value(
            "solutions",
            select=["solutionid", "uniquename"],
            filter_expr=f"uniquename eq {odata_string(solution_name)}",
            top=1,
        )
        if not rows or not rows[0].get("solutionid"):
            return None
        return normalize_guid(rows[0]["solutionid"])

    async def _is_component_in_solution(
        self,
        component_id: str,
        component_type: SolutionComponentType,
        solution_id: str,
    ) -> bool:
        rows = await self.client.get_value(
            "solutioncomponents",
            select=["solutioncomponentid"],
            filter_expr=build_filter(
                f"componenttype eq {component_type.value}",
                f"objectid eq {normalize_guid(component_id)}",
                f"_solutionid_value eq {normalize_guid(solution_id)}",
            ),
            top=1,
        )
        return bool(rows)
