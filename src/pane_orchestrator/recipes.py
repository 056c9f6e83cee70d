"""Spawn presets ("recipes"): named agent-count bundles.

Built-in recipes are always available. A project may add or override recipes
in ``config/recipes.yaml``::

    recipes:
      review:
        description: Two reviewers and a fixer
        agents:
          - {type: cc, count: 2}
          - {type: cod, count: 1}
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field

from .agents import AgentType, resolve_agent_type
from .config import ConfigError
from .envelope import Envelope, ErrorCode, WireModel, error_response, success_response, utc_timestamp

logger = logging.getLogger(__name__)

DEFAULT_RECIPES_PATH = Path("config/recipes.yaml")
SPAWN_TYPES = (AgentType.CLAUDE, AgentType.CODEX, AgentType.GEMINI)


@dataclass(frozen=True, slots=True)
class RecipeAgent:
    agent_type: AgentType
    count: int
    model: str = ""

    def __post_init__(self) -> None:
        if self.agent_type not in SPAWN_TYPES:
            raise ValueError(f"recipes can only spawn claude, codex or gemini agents, not {self.agent_type.value}")
        if self.count < 1:
            raise ValueError(f"agent count must be >= 1, got {self.count}")


@dataclass(frozen=True, slots=True)
class Recipe:
    name: str
    description: str
    agents: tuple[RecipeAgent, ...]
    source: str = "builtin"

    def count(self, agent_type: AgentType) -> int:
        return sum(agent.count for agent in self.agents if agent.agent_type is agent_type)

    @property
    def total_agents(self) -> int:
        return sum(agent.count for agent in self.agents)


def _recipe(name: str, description: str, cc: int = 0, cod: int = 0, gmi: int = 0) -> Recipe:
    counts = ((AgentType.CLAUDE, cc), (AgentType.CODEX, cod), (AgentType.GEMINI, gmi))
    return Recipe(name, description, tuple(RecipeAgent(t, n) for t, n in counts if n))


BUILTIN_RECIPES: tuple[Recipe, ...] = (
    _recipe("solo", "A single Claude agent", cc=1),
    _recipe("pair", "Claude and Codex side by side", cc=1, cod=1),
    _recipe("trio", "One agent of each type", cc=1, cod=1, gmi=1),
    _recipe("squad", "Two Claude agents backed by Codex and Gemini", cc=2, cod=1, gmi=1),
    _recipe("swarm", "Large mixed team for parallel backlog work", cc=4, cod=2, gmi=2),
)


def _parse_recipe(name: str, data: Any, source: str) -> Recipe:
    if not isinstance(data, dict):
        raise ConfigError(f"recipe {name!r} must be a mapping")
    agents = []
    for spec in data.get("agents") or []:
        if not isinstance(spec, dict):
            raise ConfigError(f"recipe {name!r}: agent entries must be mappings")
        agent_type = resolve_agent_type(str(spec.get("type", "")))
        if agent_type is None:
            raise ConfigError(f"recipe {name!r}: unknown agent type {spec.get('type')!r}")
        try:
            agents.append(RecipeAgent(agent_type, int(spec.get("count", 1)), str(spec.get("model", ""))))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"recipe {name!r}: {exc}") from exc
    if not agents:
        raise ConfigError(f"recipe {name!r} defines no agents")
    return Recipe(name, str(data.get("description", "")), tuple(agents), source)


def load_recipes(path: Path | None = None) -> list[Recipe]:
    """Built-in recipes merged with project recipes, sorted by name.

    Raises:
        ConfigError: If the project file is malformed.
    """
    recipes = {recipe.name: recipe for recipe in BUILTIN_RECIPES}
    path = path or DEFAULT_RECIPES_PATH
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping")
        section = data.get("recipes") or {}
        if not isinstance(section, dict):
            raise ConfigError(f"{path}: 'recipes' must be a mapping")
        for name, spec in section.items():
            recipes[str(name)] = _parse_recipe(str(name), spec, "project")
        logger.debug("loaded %d project recipe(s) from %s", len(section), path)
    return sorted(recipes.values(), key=lambda recipe: recipe.name)


def find_recipe(name: str, recipes: list[Recipe] | None = None) -> Recipe | None:
    for recipe in recipes if recipes is not None else load_recipes():
        if recipe.name == name:
            return recipe
    return None


class RecipeAgentInfo(WireModel):
    type: str
    count: int
    model: str | None = None


class RecipeInfo(WireModel):
    name: str
    description: str
    source: str
    total_agents: int
    agents: list[RecipeAgentInfo] = Field(default_factory=list)


class RecipesOutput(Envelope):
    generated_at: str = Field(default_factory=utc_timestamp)
    count: int = 0
    recipes: list[RecipeInfo] = Field(default_factory=list)


def list_recipes(path: Path | None = None) -> RecipesOutput:
    started = time.monotonic()
    try:
        recipes = load_recipes(path)
    except ConfigError as exc:
        return error_response(exc, ErrorCode.INTERNAL_ERROR, "Check config/recipes.yaml", model=RecipesOutput)
    infos = [
        RecipeInfo(
            name=recipe.name,
            description=recipe.description,
            source=recipe.source,
            total_agents=recipe.total_agents,
            agents=[RecipeAgentInfo(type=a.agent_type.short, count=a.count, model=a.model or None)
                    for a in recipe.agents],
        )
        for recipe in recipes
    ]
    return success_response(RecipesOutput, command="recipes", started=started, count=len(infos), recipes=infos)
