import pytest

from CFDeployments.cfn_api import SSMPARAM_NO_INVALIDATE, ParameterValues, TemplateParameters
from CFDeployments.errors import MissingParameterValue


def test_override_wins_over_previous_and_default():
    params = TemplateParameters({'Env': {'Type': 'String', 'Default': 'dev'}})

    values = params.update_existing({'Env': 'prod'}, {'Env': 'staging'})

    assert values.values == {'Env': 'prod'}
    assert values.api_parameters == [{'ParameterKey': 'Env', 'ParameterValue': 'prod'}]


def test_previous_value_is_reused():
    params = TemplateParameters({'Env': {'Type': 'String', 'Default': 'dev'}})

    values = params.update_existing({}, {'Env': 'staging'})

    assert values.values == {'Env': 'staging'}
    assert values.api_parameters == [{'ParameterKey': 'Env', 'UsePreviousValue': True}]


def test_default_is_left_to_cloudformation():
    values = TemplateParameters({'Env': {'Type': 'String', 'Default': 'dev'}}).supply_all({})

    assert values.values == {'Env': 'dev'}
    assert values.api_parameters == []


def test_missing_values_are_listed():
    params = TemplateParameters({
        'Env': {'Type': 'String'},
        'Size': {'Type': 'Number'},
        'Name': {'Type': 'String', 'Default': 'x'},
    })

    with pytest.raises(MissingParameterValue, match='Env, Size'):
        params.supply_all({})


def test_empty_string_is_a_value():
    values = TemplateParameters({'Env': {'Type': 'String'}}).supply_all({'Env': ''})

    assert values.values == {'Env': ''}
    assert values.api_parameters == [{'ParameterKey': 'Env', 'ParameterValue': ''}]


def test_undeclared_override_is_passed_through():
    values = TemplateParameters({}).supply_all({'Typo': 'value', 'Unset': None})

    assert values.api_parameters == [{'ParameterKey': 'Typo', 'ParameterValue': 'value'}]


def test_ssm_parameters_always_count_as_changed():
    formal = {'Ami': {'Type': 'AWS::SSM::Parameter::Value<String>', 'Default': '/ami/latest'}}
    values = ParameterValues(formal, {})

    assert values.has_changes({'Ami': '/ami/latest'}) == 'ssm'


def test_ssm_parameters_with_skip_marker_are_compared():
    formal = {'Ami': {
        'Type': 'AWS::SSM::Parameter::Value<String>',
        'Default': '/ami/latest',
        'Description': f"Image {SSMPARAM_NO_INVALIDATE}",
    }}
    values = ParameterValues(formal, {})

    assert values.has_changes({'Ami': '/ami/latest'}) is False
    assert values.has_changes({'Ami': '/ami/other'}) is True


def test_changed_and_added_parameters_are_detected():
    values = ParameterValues({'A': {'Type': 'String'}, 'B': {'Type': 'String'}}, {'A': '1', 'B': '2'})

    assert values.has_changes({'A': '1', 'B': '2'}) is False
    assert values.has_changes({'A': '1', 'B': '3'}) is True
    assert values.has_changes({'A': '1'}) is True
