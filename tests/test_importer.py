import json

import pytest

from CFDeployments.errors import InvalidConfiguration, StackOperationFailed
from CFDeployments.io_host import IO, IoHelper
from CFDeployments.resourceImport import (
    ImportableResource,
    ImportMap,
    ResourceImporter,
    add_default_deletion_policy,
    remove_non_import_resources,
)
from CFDeployments.resourceImport.template_diff import diff_resource
from conftest import RecordingIoHost, client_error, make_stack

DEPLOYED = {'Resources': {'Topic': {'Type': 'AWS::SNS::Topic'}}}

BUCKET_SUMMARY = {'ResourceIdentifierSummaries': [{
    'ResourceType': 'AWS::S3::Bucket',
    'LogicalResourceIds': ['Bucket'],
    'ResourceIdentifiers': ['BucketName'],
}]}


def desired_stack(bucket_properties=None):
    bucket = {'Type': 'AWS::S3::Bucket'}
    if bucket_properties is not None:
        bucket['Properties'] = bucket_properties
    return make_stack(template={'Resources': {
        'Topic': {'Type': 'AWS::SNS::Topic'},
        'Bucket': bucket,
        'CDKMetadata': {'Type': 'AWS::CDK::Metadata', 'Properties': {'Analytics': 'v2'}},
    }})


def importable(logical_id='Bucket', definition=None):
    definition = definition or {'Type': 'AWS::S3::Bucket'}
    return ImportableResource(
        logical_id=logical_id,
        resource_definition=add_default_deletion_policy(definition),
        resource_diff=diff_resource(None, definition),
    )


def importer_with_answers(deployments, stack, answers):
    host = RecordingIoHost(answers=answers)
    return ResourceImporter(stack, deployments, IoHelper(host, 'import')), host


async def test_discover_finds_additions(cfn, deployments, io_helper):
    cfn.set_stack('MyStack', 'UPDATE_COMPLETE', template=DEPLOYED)
    importer = ResourceImporter(desired_stack({'BucketName': 'my-bucket'}), deployments, io_helper)

    result = await importer.discover_importable_resources()

    assert not result.has_non_additions
    [addition] = result.additions
    assert addition.logical_id == 'Bucket'
    assert addition.resource_definition['DeletionPolicy'] == 'Retain'
    assert addition.resource_diff.new_resource_type == 'AWS::S3::Bucket'


async def test_discover_rejects_updates(cfn, deployments, io_helper):
    cfn.set_stack('MyStack', 'UPDATE_COMPLETE', template={'Resources': {
        'Topic': {'Type': 'AWS::SNS::Topic', 'Properties': {'DisplayName': 'old'}},
    }})
    importer = ResourceImporter(desired_stack(), deployments, io_helper)

    with pytest.raises(InvalidConfiguration, match='Topic'):
        await importer.discover_importable_resources()


async def test_discover_can_ignore_updates(cfn, deployments, io_helper, io_host):
    cfn.set_stack('MyStack', 'UPDATE_COMPLETE', template={'Resources': {
        'Topic': {'Type': 'AWS::SNS::Topic', 'Properties': {'DisplayName': 'old'}},
    }})
    importer = ResourceImporter(desired_stack(), deployments, io_helper)

    result = await importer.discover_importable_resources(allow_non_additions=True)

    assert result.has_non_additions
    assert [a.logical_id for a in result.additions] == ['Bucket']
    assert any('Ignoring updated/deleted resources' in text for text in io_host.texts('warn'))


async def test_identifier_from_template_is_confirmed(cfn, deployments):
    cfn.set_stack('MyStack', 'UPDATE_COMPLETE', template=DEPLOYED)
    cfn.template_summary = BUCKET_SUMMARY
    importer, host = importer_with_answers(deployments, desired_stack(), [True])

    import_map = await importer.ask_for_resource_identifiers([
        importable(definition={'Type': 'AWS::S3::Bucket', 'Properties': {'BucketName': 'my-bucket'}}),
    ])

    assert import_map.resource_map == {'Bucket': {'BucketName': 'my-bucket'}}
    assert [r.code for r in host.requests] == [IO.IMPORT_CONFIRM_IDENTIFIER]


async def test_declined_identifier_skips_resource(cfn, deployments):
    cfn.template_summary = BUCKET_SUMMARY
    importer, host = importer_with_answers(deployments, desired_stack(), [False])

    import_map = await importer.ask_for_resource_identifiers([
        importable(definition={'Type': 'AWS::S3::Bucket', 'Properties': {'BucketName': 'my-bucket'}}),
    ])

    assert import_map.import_resources == []
    assert len(host.requests) == 1


async def test_identifier_is_asked_for(cfn, deployments):
    cfn.template_summary = BUCKET_SUMMARY
    importer, host = importer_with_answers(deployments, desired_stack(), ['typed-bucket'])

    import_map = await importer.ask_for_resource_identifiers([importable()])

    assert import_map.resource_map == {'Bucket': {'BucketName': 'typed-bucket'}}
    assert [r.code for r in host.requests] == [IO.IMPORT_ENTER_PROPERTY]


async def test_empty_answer_skips_resource(cfn, deployments):
    cfn.template_summary = BUCKET_SUMMARY
    importer, _ = importer_with_answers(deployments, desired_stack(), [''])

    import_map = await importer.ask_for_resource_identifiers([importable()])

    assert import_map.import_resources == []


async def test_unsupported_resource_type_is_skipped(cfn, deployments, io_helper, io_host):
    importer = ResourceImporter(desired_stack(), deployments, io_helper)

    import_map = await importer.ask_for_resource_identifiers([importable()])

    assert import_map.import_resources == []
    assert io_host.requests == []
    assert any('unsupported resource type' in text for text in io_host.texts('warn'))


async def test_identifiers_are_loaded_from_file(deployments, io_helper, io_host, tmp_path):
    mapping = tmp_path / 'mapping.json'
    mapping.write_text(json.dumps({
        'Bucket': {'BucketName': 'from-file'},
        'Unknown': {'QueueUrl': 'https://sqs'},
    }))
    importer = ResourceImporter(desired_stack(), deployments, io_helper)

    import_map = await importer.load_resource_identifiers([importable(), importable('Other')], str(mapping))

    assert import_map.resource_map == {'Bucket': {'BucketName': 'from-file'}}
    assert [r.logical_id for r in import_map.import_resources] == ['Bucket']
    assert 'Other: skipping' in io_host.texts('info')
    assert any('Unknown' in text for text in io_host.texts('warn'))


async def test_import_from_map_runs_import_change_set(cfn, deployments, io_helper, io_host):
    cfn.set_stack('MyStack', 'UPDATE_COMPLETE', template=DEPLOYED)
    cfn.on_call['execute_change_set'] = lambda kwargs: cfn.set_stack('MyStack', 'IMPORT_COMPLETE')
    importer = ResourceImporter(desired_stack(), deployments, io_helper)
    resource = importable()

    await importer.import_resources_from_map(ImportMap(
        resource_map={'Bucket': {'BucketName': 'my-bucket'}},
        import_resources=[resource],
    ))

    [create] = cfn.calls_to('create_change_set')
    assert create['ChangeSetType'] == 'IMPORT'
    assert create['ResourcesToImport'] == [{
        'LogicalResourceId': 'Bucket',
        'ResourceType': 'AWS::S3::Bucket',
        'ResourceIdentifier': {'BucketName': 'my-bucket'},
    }]
    submitted = json.loads(create['TemplateBody'])
    assert submitted['Resources'] == {
        'Topic': {'Type': 'AWS::SNS::Topic'},
        'Bucket': {'Type': 'AWS::S3::Bucket', 'DeletionPolicy': 'Retain'},
    }
    assert len(cfn.calls_to('execute_change_set')) == 1
    assert any('✅' in text for text in io_host.texts('info'))


async def test_failed_import_is_reported(cfn, deployments, io_helper, io_host):
    cfn.set_stack('MyStack', 'UPDATE_COMPLETE', template=DEPLOYED)

    def denied(kwargs):
        raise client_error('AccessDenied', 'not allowed', 'CreateChangeSet')
    cfn.on_call['create_change_set'] = denied
    importer = ResourceImporter(desired_stack(), deployments, io_helper)

    with pytest.raises(StackOperationFailed):
        await importer.import_resources_from_map(ImportMap(
            resource_map={'Bucket': {'BucketName': 'my-bucket'}},
            import_resources=[importable()],
        ))

    assert [m.code for m in io_host.messages if m.level == 'error'] == [IO.IMPORT_FAILED]


async def test_import_from_migrate_drops_metadata_and_outputs(cfn, deployments, io_helper):
    cfn.on_call['execute_change_set'] = lambda kwargs: cfn.set_stack('MyStack', 'IMPORT_COMPLETE')
    stack = make_stack(template={
        'Resources': {
            'Bucket': {'Type': 'AWS::S3::Bucket', 'DeletionPolicy': 'Retain'},
            'CDKMetadata': {'Type': 'AWS::CDK::Metadata'},
        },
        'Outputs': {'Name': {'Value': {'Ref': 'Bucket'}}},
    })
    importer = ResourceImporter(stack, deployments, io_helper)
    to_import = [{'LogicalResourceId': 'Bucket', 'ResourceType': 'AWS::S3::Bucket', 'ResourceIdentifier': {'BucketName': 'b'}}]

    await importer.import_resources_from_migrate(to_import)

    [create] = cfn.calls_to('create_change_set')
    assert json.loads(create['TemplateBody']) == {'Resources': {'Bucket': {'Type': 'AWS::S3::Bucket', 'DeletionPolicy': 'Retain'}}}
    assert create['ResourcesToImport'] == to_import


def test_remove_non_import_resources_leaves_stack_untouched():
    stack = desired_stack()
    stack.template['Outputs'] = {'Arn': {'Value': 'x'}}

    template = remove_non_import_resources(stack)

    assert 'CDKMetadata' not in template['Resources']
    assert 'Outputs' not in template
    assert 'CDKMetadata' in stack.template['Resources']


def test_existing_deletion_policy_is_kept():
    resource = {'Type': 'AWS::S3::Bucket', 'DeletionPolicy': 'Delete'}

    assert add_default_deletion_policy(resource) is resource
