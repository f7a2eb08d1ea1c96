"""
AgentRegistry: name <-> agent mapping with an instance cache.

Definitions are agent classes or plain config dicts (ad-hoc agents). Dict
definitions are validated at registration time.
"""

from __future__ import annotations

import importlib
import inspect
import logging
from typing import Any, Dict, List, Optional, Union

from .agents import BaseAgent, BaseLlmAgent, BaseMediaAgent, BasePlanningAgent, GenericLlmAgent, ImageAgent
from .exceptions import AgentConfigurationException, AgentNotFoundException

logger = logging.getLogger("agent-adk")

Definition = Union[type, Dict[str, Any]]

# Framework base classes are never registered by discovery.
_ABSTRACT = {BaseAgent, BaseLlmAgent, BaseMediaAgent, BasePlanningAgent, GenericLlmAgent}


def import_string(path: str) -> Any:
    """Import `package.module.Attr` (or `package.module:Attr`)."""
    module_path, sep, attr = path.replace(":", ".").rpartition(".")
    if not sep or not module_path:
        raise ImportError(f"'{path}' is not a dotted import path")
    module = importlib.import_module(module_path)
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise ImportError(f"Module '{module_path}' has no attribute '{attr}'") from exc


class AgentRegistry:
    def __init__(self, runtime: Any = None) -> None:
        self.runtime = runtime
        self._definitions: Dict[str, Definition] = {}
        self._instances: Dict[str, BaseAgent] = {}

    def register(self, name: str, definition: Any) -> None:
        if isinstance(definition, str):
            try:
                definition = import_string(definition)
            except ImportError as exc:
                raise AgentConfigurationException(f"Agent '{name}' class cannot be imported: {exc}") from exc
        if isinstance(definition, dict):
            if not definition.get("instructions"):
                raise AgentConfigurationException(f"Agent '{name}' requires instructions")
            definition = dict(definition)
            definition["tools"] = [self._resolve_tool(name, t) for t in definition.get("tools") or []]
        elif not (inspect.isclass(definition) and issubclass(definition, BaseAgent)):
            raise AgentConfigurationException(f"Agent '{name}' must be a BaseAgent subclass or a config mapping")
        self._definitions[name] = definition
        self._instances.pop(name, None)
        logger.debug("Registered agent %s", name)

    @staticmethod
    def _resolve_tool(agent_name: str, ref: Any) -> Any:
        if not isinstance(ref, str):
            return ref
        try:
            return import_string(ref)
        except ImportError as exc:
            raise AgentConfigurationException(f"Agent '{agent_name}' tool '{ref}' cannot be imported: {exc}") from exc

    def has_agent(self, name: str) -> bool:
        return name in self._definitions

    def get_all_registered_agents(self) -> Dict[str, Definition]:
        return dict(self._definitions)

    def names(self) -> List[str]:
        return sorted(self._definitions)

    def _instantiate(self, name: str, definition: Definition) -> BaseAgent:
        if isinstance(definition, dict):
            agent: BaseAgent = GenericLlmAgent(name, definition)
        else:
            agent = definition()
            if not agent.name:
                agent.name = name
        if self.runtime is not None:
            agent.attach(self.runtime)
        return agent

    def get_agent(self, name: str) -> BaseAgent:
        agent = self._instances.get(name)
        if agent is not None:
            return agent
        definition = self._definitions.get(name)
        if definition is None:
            raise AgentNotFoundException(f"Agent '{name}' is not registered", details={"agent": name})
        agent = self._instantiate(name, definition)
        self._instances[name] = agent
        return agent

    def _name_for_class(self, cls: type) -> Optional[str]:
        for name, definition in self._definitions.items():
            if definition is cls:
                return name
        return None

    def _register_class(self, cls: type) -> str:
        """Auto-register an unregistered agent class under the name its instance reports."""
        agent = cls()
        if not agent.name:
            raise AgentConfigurationException(f"Agent class {cls.__name__} has no name")
        if self.runtime is not None:
            agent.attach(self.runtime)
        self._definitions[agent.name] = cls
        self._instances[agent.name] = agent
        logger.info("Auto-registered agent %s from class %s", agent.name, cls.__name__)
        return agent.name

    def get_agent_name_by_class(self, cls: type) -> str:
        name = self._name_for_class(cls)
        if name is not None:
            return name
        if inspect.isclass(cls) and issubclass(cls, BaseAgent):
            return self._register_class(cls)
        raise AgentNotFoundException(f"Agent class {cls!r} is not registered")

    def resolve_agent_name(self, name_or_class: Any) -> str:
        """Accept a registered name, an agent class, an agent instance or a dotted class path."""
        if isinstance(name_or_class, BaseAgent):
            name_or_class = type(name_or_class)
        if isinstance(name_or_class, str):
            if name_or_class in self._definitions:
                return name_or_class
            if "." in name_or_class or ":" in name_or_class:
                try:
                    cls = import_string(name_or_class)
                except ImportError as exc:
                    raise AgentNotFoundException(f"Agent '{name_or_class}' is not registered") from exc
                if inspect.isclass(cls) and issubclass(cls, BaseAgent):
                    return self.get_agent_name_by_class(cls)
            raise AgentNotFoundException(f"Agent '{name_or_class}' is not registered", details={"agent": name_or_class})
        if inspect.isclass(name_or_class):
            return self.get_agent_name_by_class(name_or_class)
        raise AgentNotFoundException(f"Cannot resolve agent from {name_or_class!r}")

    # -- loading --------------------------------------------------------------

    def load_config_agents(self, agents: Dict[str, Dict[str, Any]]) -> None:
        for name, config in (agents or {}).items():
            self.register(name, config)

    def discover(self, modules: List[str]) -> List[str]:
        """Import each module and register the concrete agent classes it defines."""
        found: List[str] = []
        for module_name in modules:
            module = importlib.import_module(module_name)
            for _, obj in inspect.getmembers(module, inspect.isclass):
                if obj.__module__ != module.__name__ or obj in _ABSTRACT:
                    continue
                if not issubclass(obj, BaseAgent) or not getattr(obj, "name", ""):
                    continue
                self.register(obj.name, obj)
                found.append(obj.name)
        logger.info("Discovered %d agents in %s", len(found), ", ".join(modules))
        return found

    def register_builtin_agents(self) -> None:
        if not self.has_agent(ImageAgent.name):
            self.register(ImageAgent.name, ImageAgent)

    def forget(self, name: str) -> None:
        self._definitions.pop(name, None)
        self._instances.pop(name, None)
