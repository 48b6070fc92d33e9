"""
Template Diff

Structural comparison of two CloudFormation templates, resource by
resource, using the same equality rules CloudFormation applies.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def _safe_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def deep_equal(lvalue: Any, rvalue: Any) -> bool:
    """
    Compare two template fragments.

    A numeric string equals the number it spells, a boolean equals its
    string form ('true'/'false') and DependsOn lists compare regardless
    of order.
    """
    if lvalue is rvalue:
        return True
    if type(lvalue) is type(rvalue) and not isinstance(lvalue, (dict, list)) and lvalue == rvalue:
        return True
    if _safe_float(lvalue) is not None and not isinstance(lvalue, str) and _safe_float(lvalue) == _safe_float(rvalue):
        return True

    # CloudFormation accepts strings for boolean fields
    if isinstance(lvalue, bool) and isinstance(rvalue, str) or isinstance(lvalue, str) and isinstance(rvalue, bool):
        as_str = [str(v).lower() if isinstance(v, bool) else v for v in (lvalue, rvalue)]
        if as_str[0] == as_str[1]:
            return True

    # A numeric 10 and a literal "10" are the same value
    if isinstance(lvalue, str) or isinstance(rvalue, str):
        lnum, rnum = _safe_float(lvalue), _safe_float(rvalue)
        if lnum is not None and lnum == rnum:
            return True

    if isinstance(lvalue, list) and isinstance(rvalue, list):
        if len(lvalue) != len(rvalue):
            return False
        return all(deep_equal(l, r) for l, r in zip(lvalue, rvalue))

    if isinstance(lvalue, dict) and isinstance(rvalue, dict):
        if len(lvalue) != len(rvalue):
            return False
        for key, value in lvalue.items():
            if key not in rvalue:
                return False
            if key == 'DependsOn':
                if not _depends_on_equal(value, rvalue[key]):
                    return False
                continue
            if not deep_equal(value, rvalue[key]):
                return False
        return True

    return False


def _depends_on_equal(lvalue: Any, rvalue: Any) -> bool:
    # ['Value'] and 'Value' are equivalent
    if isinstance(lvalue, list) != isinstance(rvalue, list):
        array, single = (lvalue, rvalue) if isinstance(lvalue, list) else (rvalue, lvalue)
        return len(array) == 1 and deep_equal(array[0], single)

    if isinstance(lvalue, list):
        if len(lvalue) != len(rvalue):
            return False
        return all(any(deep_equal(l, r) for r in rvalue) for l in lvalue)

    return deep_equal(lvalue, rvalue)


@dataclass
class Difference:
    """Old and new value of one template element"""
    old_value: Any = None
    new_value: Any = None

    @property
    def is_different(self) -> bool:
        return not deep_equal(self.old_value, self.new_value)

    @property
    def is_addition(self) -> bool:
        return self.old_value is None and self.new_value is not None

    @property
    def is_removal(self) -> bool:
        return self.old_value is not None and self.new_value is None

    @property
    def is_update(self) -> bool:
        return self.old_value is not None and self.new_value is not None and self.is_different


@dataclass
class ResourceDifference(Difference):
    """
    Difference of one resource.

    Attributes:
        property_updates: Changed entries of 'Properties', by property name
        other_changes: Changed top-level keys other than 'Type' and 'Properties'
    """
    property_updates: Dict[str, Difference] = field(default_factory=dict)
    other_changes: Dict[str, Difference] = field(default_factory=dict)

    @property
    def old_resource_type(self) -> Optional[str]:
        return (self.old_value or {}).get('Type')

    @property
    def new_resource_type(self) -> Optional[str]:
        return (self.new_value or {}).get('Type')

    @property
    def resource_type(self) -> Optional[str]:
        return self.new_resource_type or self.old_resource_type

    @property
    def is_different(self) -> bool:
        return self.is_addition or self.is_removal or bool(self.property_updates) or bool(self.other_changes) \
            or self.old_resource_type != self.new_resource_type


@dataclass
class DifferenceCollection:
    """Changed elements of one template section, by logical ID"""
    changes: Dict[str, Difference] = field(default_factory=dict)

    @property
    def logical_ids(self) -> List[str]:
        return list(self.changes.keys())

    @property
    def differences_count(self) -> int:
        return len(self.changes)


@dataclass
class TemplateDiff:
    resources: DifferenceCollection
    parameters: DifferenceCollection
    outputs: DifferenceCollection
    other: DifferenceCollection

    @property
    def differences_count(self) -> int:
        return sum(c.differences_count for c in (self.resources, self.parameters, self.outputs, self.other))

    @property
    def is_empty(self) -> bool:
        return self.differences_count == 0


def diff_resource(old_value: Optional[Dict], new_value: Optional[Dict]) -> ResourceDifference:
    diff = ResourceDifference(old_value, new_value)
    if old_value is None or new_value is None:
        return diff

    old_props = old_value.get('Properties') or {}
    new_props = new_value.get('Properties') or {}
    for key in _ordered_keys(old_props, new_props):
        prop_diff = Difference(old_props.get(key), new_props.get(key))
        if prop_diff.is_different:
            diff.property_updates[key] = prop_diff

    for key in _ordered_keys(old_value, new_value):
        if key in ('Type', 'Properties'):
            continue
        other_diff = Difference(old_value.get(key), new_value.get(key))
        if key == 'DependsOn':
            if not _depends_on_equal(other_diff.old_value, other_diff.new_value):
                diff.other_changes[key] = other_diff
        elif other_diff.is_different:
            diff.other_changes[key] = other_diff
    return diff


def _ordered_keys(old: Dict, new: Dict) -> List[str]:
    keys = list(old.keys())
    keys.extend(k for k in new.keys() if k not in old)
    return keys


def _diff_section(old: Dict, new: Dict) -> DifferenceCollection:
    changes = {}
    for key in _ordered_keys(old, new):
        diff = Difference(old.get(key), new.get(key))
        if diff.is_different:
            changes[key] = diff
    return DifferenceCollection(changes)


def full_diff(current_template: Optional[Dict], desired_template: Optional[Dict]) -> TemplateDiff:
    """
    Compare the deployed template with the desired one.

    Args:
        current_template: Deployed template ({} if the stack does not exist)
        desired_template: Template about to be deployed

    Returns:
        TemplateDiff with only the changed elements in each section
    """
    current_template = current_template or {}
    desired_template = desired_template or {}

    old_resources = current_template.get('Resources') or {}
    new_resources = desired_template.get('Resources') or {}
    resource_changes = {}
    for logical_id in _ordered_keys(old_resources, new_resources):
        diff = diff_resource(old_resources.get(logical_id), new_resources.get(logical_id))
        if diff.is_different:
            resource_changes[logical_id] = diff

    other_old = {k: v for k, v in current_template.items() if k not in ('Resources', 'Parameters', 'Outputs')}
    other_new = {k: v for k, v in desired_template.items() if k not in ('Resources', 'Parameters', 'Outputs')}

    return TemplateDiff(
        resources=DifferenceCollection(resource_changes),
        parameters=_diff_section(current_template.get('Parameters') or {}, desired_template.get('Parameters') or {}),
        outputs=_diff_section(current_template.get('Outputs') or {}, desired_template.get('Outputs') or {}),
        other=_diff_section(other_old, other_new),
    )
