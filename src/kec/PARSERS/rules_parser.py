# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Parsers for policy rule YAML files.

Example::

    clouds:
      kubernetes:
        rules:
          - type: container-image
            action: reject
            names: |
              # no unpinned base images
              docker.io/library/*
    global_rules:
      - type: container-image
        action: allow
        names: "*"
"""
import os
import yaml
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..MODELS.policy_config import PolicyConfig
from ..RULES.container_image_rule import ContainerImageRule
from ..RULES.policy_rule import PolicyRule
from ..UTILS.string_interpolation import EnvironmentInterpolator

RuleFactory = Callable[[Dict[str, Any]], PolicyRule]

DEFAULT_RULE_TYPES: Dict[str, RuleFactory] = {
    "container-image": ContainerImageRule.from_config,
}


class RulesParser:
    """
    Parser for policy rule configuration files.
    """
    def __init__(self,
                 context: Optional[Mapping[str, str]] = None,
                 rule_types: Optional[Mapping[str, RuleFactory]] = None):
        """
        Initializes the parser.

        :param context: Variables for ${VAR} interpolation, defaults to the process environment.
        :param rule_types: Rule type name to factory mapping.
        """
        self.context = dict(os.environ) if context is None else dict(context)
        self.rule_types = dict(DEFAULT_RULE_TYPES if rule_types is None else rule_types)

    def parse(self, config_path: str) -> PolicyConfig:
        """
        Parses a rules file from a path.

        :param config_path: Path to the rules file.
        :return: Parsed configuration.
        """
        with open(config_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> PolicyConfig:
        """
        Parses a rules file from a string.

        :param content: YAML content of the rules file.
        :return: Parsed configuration.
        :raises ValueError: If the document does not describe a rule configuration.
        """
        content = EnvironmentInterpolator.interpolate(content, self.context)
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid rules file: {e}") from e

        if data is None:
            return PolicyConfig()
        if not isinstance(data, dict):
            raise ValueError("Rules file must be a mapping")

        clouds = {}
        raw_clouds = data.get("clouds") or {}
        if not isinstance(raw_clouds, dict):
            raise ValueError("'clouds' must be a mapping of cloud name to settings")
        for cloud_name, cloud_data in raw_clouds.items():
            cloud_data = cloud_data or {}
            if not isinstance(cloud_data, dict):
                raise ValueError(f"Cloud '{cloud_name}' must be a mapping")
            if cloud_data.get("enabled", True) is False:
                continue
            clouds[str(cloud_name)] = tuple(self._parse_rules(cloud_data.get("rules"), str(cloud_name)))

        global_rules = tuple(self._parse_rules(data.get("global_rules"), "global_rules"))
        return PolicyConfig(clouds=clouds, global_rules=global_rules)

    def _parse_rules(self, raw: Any, where: str) -> List[PolicyRule]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise ValueError(f"Rules of {where} must be a list")

        rules = []
        for index, item in enumerate(raw):
            if not isinstance(item, dict):
                raise ValueError(f"Rule {index} of {where} must be a mapping")
            rule_type = item.get("type", "container-image")
            factory = self.rule_types.get(rule_type)
            if factory is None:
                raise ValueError(f"Unknown rule type '{rule_type}' in {where}")
            try:
                rules.append(factory(item))
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid rule {index} of {where}: {e}") from e
        return rules
