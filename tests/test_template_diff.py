from CFDeployments.resourceImport.template_diff import deep_equal, full_diff


def test_numbers_and_numeric_strings_are_equal():
    assert deep_equal(10, '10')
    assert deep_equal('10', 10)
    assert deep_equal(1.5, '1.5')
    assert not deep_equal('10', 11)


def test_booleans_and_their_strings_are_equal():
    assert deep_equal(True, 'true')
    assert deep_equal('false', False)
    assert not deep_equal(True, 'false')
    assert not deep_equal(True, 1)


def test_depends_on_order_does_not_matter():
    assert deep_equal({'DependsOn': ['A', 'B']}, {'DependsOn': ['B', 'A']})
    assert deep_equal({'DependsOn': ['A']}, {'DependsOn': 'A'})
    assert not deep_equal({'DependsOn': ['A', 'B']}, {'DependsOn': ['A', 'C']})


def test_lists_are_ordered():
    assert not deep_equal(['a', 'b'], ['b', 'a'])


def test_full_diff_classifies_resource_changes():
    old = {'Resources': {
        'Kept': {'Type': 'AWS::SNS::Topic'},
        'Changed': {'Type': 'AWS::SQS::Queue', 'Properties': {'DelaySeconds': 5}},
        'Removed': {'Type': 'AWS::S3::Bucket'},
    }}
    new = {'Resources': {
        'Kept': {'Type': 'AWS::SNS::Topic'},
        'Changed': {'Type': 'AWS::SQS::Queue', 'Properties': {'DelaySeconds': '10'}, 'DependsOn': 'Kept'},
        'Added': {'Type': 'AWS::S3::Bucket'},
    }}

    changes = full_diff(old, new).resources.changes

    assert set(changes) == {'Changed', 'Removed', 'Added'}
    assert changes['Added'].is_addition
    assert changes['Removed'].is_removal
    assert changes['Changed'].is_update
    assert list(changes['Changed'].property_updates) == ['DelaySeconds']
    assert list(changes['Changed'].other_changes) == ['DependsOn']


def test_equivalent_templates_have_no_differences():
    old = {'Resources': {'Q': {'Type': 'AWS::SQS::Queue', 'Properties': {'DelaySeconds': 5, 'Fifo': True}}}}
    new = {'Resources': {'Q': {'Type': 'AWS::SQS::Queue', 'Properties': {'DelaySeconds': '5', 'Fifo': 'true'}}}}

    assert full_diff(old, new).is_empty


def test_type_change_is_a_difference():
    diff = full_diff(
        {'Resources': {'R': {'Type': 'AWS::SQS::Queue'}}},
        {'Resources': {'R': {'Type': 'AWS::SNS::Topic'}}},
    )

    [change] = diff.resources.changes.values()
    assert change.old_resource_type == 'AWS::SQS::Queue'
    assert change.new_resource_type == 'AWS::SNS::Topic'


def test_other_sections_are_compared():
    diff = full_diff(
        {'Outputs': {'A': {'Value': 'x'}}, 'Description': 'old'},
        {'Outputs': {'A': {'Value': 'y'}}, 'Description': 'new', 'Parameters': {'P': {'Type': 'String'}}},
    )

    assert diff.outputs.logical_ids == ['A']
    assert diff.parameters.logical_ids == ['P']
    assert diff.other.logical_ids == ['Description']
    assert diff.differences_count == 3
