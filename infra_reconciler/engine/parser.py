"""
Infra Reconciler - Declaration Parser

Parses and validates YAML declaration files.
Transforms raw YAML into a validated Declaration model.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple
import logging
import re

import yaml
from pydantic import ValidationError

from infra_reconciler.models import (
    IDENTIFIER_PATTERN,
    Declaration,
    ResourceDeclaration,
)

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\$\{var\.(?P<name>[A-Za-z0-9_\-]+)\}")


class ParserError(Exception):
    """Exception raised for declaration parser errors."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)


class DeclarationParser:
    """
    Parser for resource declaration files.

    Responsibilities:
    - Parse YAML content
    - Validate structure, identifiers and meta-arguments
    - Substitute ${var.NAME} placeholders
    - Transform to domain model (Declaration)
    - Report clear validation errors

    Reference existence and cycles are checked later by the graph builder.
    """

    # Required top-level sections
    REQUIRED_SECTIONS = ["resources"]

    # Optional sections
    OPTIONAL_SECTIONS = ["variables"]

    # Attribute keys interpreted by the engine instead of the adapter
    META_ARGUMENTS = ["depends_on"]

    def __init__(self):
        """Initialize parser."""
        self.logger = logging.getLogger(__name__)

    def parse(
        self,
        yaml_content: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Declaration:
        """
        Parse YAML content into a Declaration.

        Args:
            yaml_content: YAML declaration string
            variables: Overrides for values in the ``variables`` section

        Returns:
            Validated Declaration

        Raises:
            ParserError: If parsing or validation fails
        """
        raw = self._parse_yaml(yaml_content)

        errors = self._validate_structure(raw)
        if errors:
            raise ParserError("Declaration validation failed", errors=errors)

        merged_vars: Dict[str, Any] = dict(raw.get("variables") or {})
        if variables:
            merged_vars.update(variables)

        var_errors: List[str] = []
        resources_section = self._substitute(raw["resources"], merged_vars, var_errors)
        if var_errors:
            raise ParserError("Variable substitution failed", errors=sorted(set(var_errors)))

        try:
            declaration = self._transform_to_model(resources_section, merged_vars)
        except ValidationError as e:
            errors = [f"{err['loc']}: {err['msg']}" for err in e.errors()]
            raise ParserError("Model validation failed", errors=errors)

        self.logger.info(
            f"Parsed declaration with {len(declaration.resources)} resources"
        )
        return declaration

    def _parse_yaml(self, yaml_content: str) -> Dict[str, Any]:
        try:
            config = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ParserError(f"YAML syntax error: {str(e)}")
        if config is None:
            raise ParserError("Empty declaration")
        if not isinstance(config, dict):
            raise ParserError("Declaration must be a YAML mapping/dictionary")
        return config

    def _validate_structure(self, config: Dict[str, Any]) -> List[str]:
        """
        Validate declaration structure.

        Args:
            config: Parsed YAML dictionary

        Returns:
            List of validation errors
        """
        errors = []

        for section in self.REQUIRED_SECTIONS:
            if section not in config:
                errors.append(f"Missing required section: '{section}'")

        known = set(self.REQUIRED_SECTIONS) | set(self.OPTIONAL_SECTIONS)
        for section in config:
            if section not in known:
                errors.append(f"Unknown section: '{section}'")

        variables = config.get("variables")
        if variables is not None and not isinstance(variables, dict):
            errors.append("variables must be a mapping")

        resources = config.get("resources")
        if resources is None:
            return errors
        if not isinstance(resources, dict):
            errors.append("resources must be a mapping of type -> name -> attributes")
            return errors

        for rtype, named in resources.items():
            if not isinstance(rtype, str) or not IDENTIFIER_PATTERN.match(rtype):
                errors.append(f"Invalid resource type: '{rtype}'")
                continue
            if not isinstance(named, dict):
                errors.append(f"resources.{rtype} must be a mapping of name -> attributes")
                continue
            for name, body in named.items():
                path = f"resources.{rtype}.{name}"
                if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
                    errors.append(f"Invalid resource name: '{path}'")
                    continue
                if body is None:
                    continue
                if not isinstance(body, dict):
                    errors.append(f"{path} must be a mapping")
                    continue
                errors.extend(self._validate_depends_on(path, body.get("depends_on")))

        return errors

    def _validate_depends_on(self, path: str, depends_on: Any) -> List[str]:
        if depends_on is None:
            return []
        if not isinstance(depends_on, list):
            return [f"{path}.depends_on must be a list"]
        errors = []
        for i, item in enumerate(depends_on):
            parts = item.split(".") if isinstance(item, str) else []
            if len(parts) != 2 or not all(IDENTIFIER_PATTERN.match(p) for p in parts):
                errors.append(f"{path}.depends_on[{i}] must be a 'type.name' key")
        return errors

    def _substitute(self, value: Any, variables: Dict[str, Any], errors: List[str]) -> Any:
        """Replace ${var.NAME} placeholders recursively."""
        if isinstance(value, str):
            whole = VARIABLE_PATTERN.fullmatch(value)
            if whole:
                name = whole["name"]
                if name not in variables:
                    errors.append(f"Undefined variable: '{name}'")
                    return value
                return variables[name]

            def replace(match: re.Match) -> str:
                name = match["name"]
                if name not in variables:
                    errors.append(f"Undefined variable: '{name}'")
                    return match.group(0)
                return str(variables[name])

            return VARIABLE_PATTERN.sub(replace, value)
        if isinstance(value, dict):
            return {k: self._substitute(v, variables, errors) for k, v in value.items()}
        if isinstance(value, list):
            return [self._substitute(v, variables, errors) for v in value]
        return value

    def _transform_to_model(
        self,
        resources: Dict[str, Dict[str, Any]],
        variables: Dict[str, Any],
    ) -> Declaration:
        declarations = []
        for rtype, named in resources.items():
            for name, body in named.items():
                attributes = dict(body or {})
                depends_on = attributes.pop("depends_on", None) or []
                declarations.append(
                    ResourceDeclaration(
                        type=rtype,
                        name=name,
                        attributes=attributes,
                        depends_on=depends_on,
                    )
                )
        return Declaration(resources=declarations, variables=variables)

    def parse_file(
        self,
        file_path: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Declaration:
        """
        Parse a declaration from file.

        Raises:
            ParserError: If file cannot be read or parsed
        """
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                yaml_content = f.read()
        except OSError as e:
            raise ParserError(f"Cannot read file: {str(e)}")

        return self.parse(yaml_content, variables=variables)

    def validate_only(self, yaml_content: str) -> Tuple[bool, List[str]]:
        """
        Validate a declaration without returning the model.

        Returns:
            Tuple of (is_valid, error_list)
        """
        try:
            self.parse(yaml_content)
            return True, []
        except ParserError as e:
            return False, e.errors or [e.message]


# Singleton instance
parser = DeclarationParser()


def get_parser() -> DeclarationParser:
    """Get parser instance."""
    return parser
