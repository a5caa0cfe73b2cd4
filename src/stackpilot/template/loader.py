"""YAML template loading and normalization.

Templates are either already normalized::

    variables: {...}
    resources: {id: {type, properties, depends_on}}
    outputs: {...}

or CloudFormation-shaped (``Parameters``, ``Resources``, ``Outputs``), which
is normalized to the form above. Short-form tags ``!Ref``, ``!GetAtt`` and
``!Sub`` are expanded to their long ``Ref`` / ``Fn::*`` mappings.
"""

from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from stackpilot.utils.errors import (
    ConfigurationError,
    ValidationError,
    ValidationErrorKind,
)
from stackpilot.utils.logging import get_logger

logger = get_logger(__name__)

NORMALIZED_SECTIONS = frozenset({'variables', 'resources', 'outputs'})
CFN_IGNORED_SECTIONS = frozenset({'AWSTemplateFormatVersion', 'Description', 'Metadata'})
CFN_SECTIONS = frozenset({'Parameters', 'Resources', 'Outputs'}) | CFN_IGNORED_SECTIONS
CFN_IGNORED_RESOURCE_KEYS = frozenset({'Metadata', 'DeletionPolicy', 'UpdateReplacePolicy'})

_MERGE_TAG = 'tag:yaml.org,2002:merge'


class TemplateLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys and knows CloudFormation short forms."""

    def construct_mapping(self, node, deep=False):
        if isinstance(node, yaml.MappingNode):
            seen = {}
            for key_node, _ in node.value:
                if key_node.tag == _MERGE_TAG:
                    continue
                key = self.construct_object(key_node, deep=True)
                try:
                    hash(key)
                except TypeError:
                    # Let the base constructor report the unhashable key
                    continue
                if key in seen:
                    raise ValidationError(
                        f"Duplicate key '{key}' at line {key_node.start_mark.line + 1} "
                        f"(first defined at line {seen[key] + 1})",
                        kind=ValidationErrorKind.DUPLICATE_KEY
                    )
                seen[key] = key_node.start_mark.line
        return super().construct_mapping(node, deep=deep)


def _malformed(message: str, node: yaml.Node) -> ValidationError:
    return ValidationError(
        f"{message} at line {node.start_mark.line + 1}",
        kind=ValidationErrorKind.MALFORMED_DOCUMENT
    )


def _construct_ref(loader: TemplateLoader, node: yaml.Node) -> Dict[str, Any]:
    if not isinstance(node, yaml.ScalarNode):
        raise _malformed("!Ref expects a name", node)
    return {'Ref': loader.construct_scalar(node)}


def _construct_get_att(loader: TemplateLoader, node: yaml.Node) -> Dict[str, Any]:
    if isinstance(node, yaml.ScalarNode):
        value = loader.construct_scalar(node)
        if '.' not in value:
            raise _malformed("!GetAtt expects 'Name.Attribute'", node)
        return {'Fn::GetAtt': value.split('.', 1)}
    if isinstance(node, yaml.SequenceNode):
        return {'Fn::GetAtt': loader.construct_sequence(node, deep=True)}
    raise _malformed("!GetAtt expects 'Name.Attribute' or [Name, Attribute]", node)


def _construct_sub(loader: TemplateLoader, node: yaml.Node) -> Dict[str, Any]:
    if isinstance(node, yaml.ScalarNode):
        return {'Fn::Sub': loader.construct_scalar(node)}
    if isinstance(node, yaml.SequenceNode):
        return {'Fn::Sub': loader.construct_sequence(node, deep=True)}
    raise _malformed("!Sub expects a string or [string, {locals}]", node)


def _construct_unknown(loader: TemplateLoader, tag_suffix: str, node: yaml.Node) -> Any:
    raise _malformed(f"Unsupported tag !{tag_suffix}", node)


TemplateLoader.add_constructor('!Ref', _construct_ref)
TemplateLoader.add_constructor('!GetAtt', _construct_get_att)
TemplateLoader.add_constructor('!Sub', _construct_sub)
TemplateLoader.add_multi_constructor('!', _construct_unknown)


def parse_template(
    text: str,
    variables: Optional[Mapping[str, Any]] = None,
    source: str = '<string>'
) -> Dict[str, Any]:
    """Parse template text into a normalized document.

    Args:
        text: YAML (or JSON) template text
        variables: Variable overrides; they win over template values and
            parameter defaults
        source: Name used in error messages

    Returns:
        Normalized document with ``variables``, ``resources`` and ``outputs``

    Raises:
        ValidationError: On YAML errors, duplicate keys, unsupported tags,
            missing parameter values or unknown sections
    """
    try:
        data = yaml.load(text, Loader=TemplateLoader)
    except yaml.YAMLError as e:
        raise ValidationError(
            f"Failed to parse {source}: {e}",
            kind=ValidationErrorKind.MALFORMED_DOCUMENT,
            cause=e
        ) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError(
            f"{source} must contain a mapping at the top level",
            kind=ValidationErrorKind.MALFORMED_DOCUMENT
        )

    overrides = dict(variables or {})
    if 'Resources' in data or 'Parameters' in data:
        document = _normalize_cloudformation(data, overrides)
    else:
        document = _normalize(data, overrides)

    logger.debug(
        f"Loaded {source}: {len(document['resources'])} resources, "
        f"{len(document['variables'])} variables, {len(document['outputs'])} outputs"
    )
    return document


def load_template(
    path: Union[str, Path],
    variables: Optional[Mapping[str, Any]] = None
) -> Dict[str, Any]:
    """Load a template file into a normalized document.

    Raises:
        ConfigurationError: If the file cannot be read
        ValidationError: If the template is invalid
    """
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read template {path}: {e}", cause=e) from e
    return parse_template(text, variables, source=str(path))


def _normalize(data: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(data) - NORMALIZED_SECTIONS
    if unknown:
        raise ValidationError(
            f"Unknown top-level sections: {', '.join(sorted(map(str, unknown)))}",
            kind=ValidationErrorKind.MALFORMED_DOCUMENT
        )

    template_variables = data.get('variables') or {}
    if not isinstance(template_variables, dict):
        raise ValidationError("'variables' must be a mapping", kind=ValidationErrorKind.MALFORMED_DOCUMENT)

    return {
        'variables': {**template_variables, **overrides},
        'resources': data.get('resources') or {},
        'outputs': data.get('outputs') or {},
    }


def _normalize_cloudformation(data: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(data) - CFN_SECTIONS
    if unknown:
        raise ValidationError(
            f"Unsupported template sections: {', '.join(sorted(map(str, unknown)))}",
            kind=ValidationErrorKind.MALFORMED_DOCUMENT
        )

    variables: Dict[str, Any] = {}
    for name, parameter in (data.get('Parameters') or {}).items():
        if not isinstance(parameter, dict):
            raise ValidationError(
                f"Parameter '{name}' must be a mapping",
                kind=ValidationErrorKind.MALFORMED_DOCUMENT
            )
        if name in overrides:
            value = overrides[name]
        elif 'Default' in parameter:
            value = parameter['Default']
        else:
            raise ValidationError(
                f"Parameter '{name}' has no value and no Default",
                kind=ValidationErrorKind.MISSING_VARIABLE,
                suggestions=[f"Pass it with --var {name}=VALUE"]
            )
        variables[name] = _coerce_parameter(name, parameter.get('Type', 'String'), value)

    for name, value in overrides.items():
        variables.setdefault(name, value)

    resources: Dict[str, Any] = {}
    for identifier, declaration in (data.get('Resources') or {}).items():
        if not isinstance(declaration, dict):
            raise ValidationError(
                f"Resource '{identifier}' must be a mapping",
                kind=ValidationErrorKind.MALFORMED_DOCUMENT,
                resource_id=identifier
            )
        unknown = set(declaration) - {'Type', 'Properties', 'DependsOn'} - CFN_IGNORED_RESOURCE_KEYS
        if unknown:
            raise ValidationError(
                f"Resource '{identifier}' uses unsupported keys: {', '.join(sorted(unknown))}",
                kind=ValidationErrorKind.MALFORMED_DOCUMENT,
                resource_id=identifier
            )
        normalized = {
            'type': declaration.get('Type'),
            'properties': declaration.get('Properties') or {},
        }
        if 'DependsOn' in declaration:
            normalized['depends_on'] = declaration['DependsOn']
        resources[identifier] = normalized

    outputs: Dict[str, Any] = {}
    for name, output in (data.get('Outputs') or {}).items():
        if not isinstance(output, dict) or 'Value' not in output:
            raise ValidationError(
                f"Output '{name}' must be a mapping with a Value",
                kind=ValidationErrorKind.MALFORMED_DOCUMENT
            )
        outputs[name] = output['Value']

    return {'variables': variables, 'resources': resources, 'outputs': outputs}


def _coerce_parameter(name: str, type_name: str, value: Any) -> Any:
    """Convert override strings to the parameter's declared type."""
    if not isinstance(value, str):
        return value
    if type_name == 'Number':
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                raise ValidationError(
                    f"Parameter '{name}' must be a number, got '{value}'",
                    kind=ValidationErrorKind.MALFORMED_DOCUMENT
                ) from None
    if type_name == 'CommaDelimitedList':
        return [item.strip() for item in value.split(',')]
    return value
