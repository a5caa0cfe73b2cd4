"""Tests for reference parsing, resolution and normalization."""

import pytest

from stackpilot.drivers.base import ProviderResult
from stackpilot.orchestrator.references import (
    Interpolation,
    Reference,
    ReferenceParser,
    canonicalize,
    iter_references,
    resolve_value,
    to_document,
)
from stackpilot.utils.errors import ReferenceResolutionError, ValidationError, ValidationErrorKind


@pytest.fixture
def parser():
    return ReferenceParser({'Network', 'Server'}, {'Env': 'prod', 'Replicas': 3, 'AWS::Region': 'eu-west-1'})


class TestReferenceParser:
    """Test intrinsic parsing."""

    def test_ref_to_variable_is_substituted(self, parser):
        """Test variable substitution."""
        assert parser.parse({'Stage': {'Ref': 'Env'}}, 'Server') == {'Stage': 'prod'}

    def test_ref_to_resource_becomes_reference(self, parser):
        """Test resource references."""
        assert parser.parse({'Ref': 'Network'}, 'Server') == Reference('Network')

    def test_get_att_forms(self, parser):
        """Test both GetAtt spellings, splitting on the first dot."""
        assert parser.parse({'Fn::GetAtt': ['Network', 'CidrBlock']}, 'Server') == Reference('Network', 'CidrBlock')
        assert parser.parse({'Fn::GetAtt': 'Network.Endpoint.Address'}, 'Server') == \
            Reference('Network', 'Endpoint.Address')

    def test_sub_without_references_is_plain_string(self, parser):
        """Test variable and pseudo-parameter interpolation."""
        value = parser.parse({'Fn::Sub': '${Env}-${AWS::Region}-${Replicas}'}, 'Server')

        assert value == 'prod-eu-west-1-3'

    def test_sub_with_references(self, parser):
        """Test interpolation parts."""
        value = parser.parse({'Fn::Sub': 'arn:${Network.Arn}/${Server}'}, 'Server')

        assert isinstance(value, Interpolation)
        assert value.parts == ('arn:', Reference('Network', 'Arn'), '/', Reference('Server'))

    def test_sub_locals_and_escape(self, parser):
        """Test local values and the literal escape."""
        value = parser.parse(
            {'Fn::Sub': ['${Name}-${!Literal}', {'Name': {'Fn::GetAtt': ['Network', 'Id']}}]},
            'Server'
        )

        assert value == Interpolation((Reference('Network', 'Id'), '-${Literal}'))

    def test_unknown_reference(self, parser):
        """Test references to undeclared names."""
        with pytest.raises(ValidationError) as exc_info:
            parser.parse({'Subnet': {'Ref': 'Missing'}}, 'Server')

        assert exc_info.value.kind == ValidationErrorKind.UNKNOWN_REFERENCE
        assert exc_info.value.resource_id == 'Server'
        assert 'Subnet' in exc_info.value.message

    def test_unsupported_intrinsic(self, parser):
        """Test intrinsics that are not understood."""
        with pytest.raises(ValidationError) as exc_info:
            parser.parse({'Fn::Join': ['-', ['a', 'b']]}, 'Server')

        assert exc_info.value.kind == ValidationErrorKind.MALFORMED_DOCUMENT

    def test_intrinsic_with_extra_keys(self, parser):
        """Test that intrinsics must stand alone."""
        with pytest.raises(ValidationError):
            parser.parse({'Ref': 'Network', 'Other': 1}, 'Server')

    def test_iter_references_walks_nested_values(self, parser):
        """Test reference collection."""
        value = parser.parse(
            {'A': [{'Ref': 'Network'}], 'B': {'C': {'Fn::Sub': '${Server.Ip}'}}},
            'X'
        )

        assert sorted(str(ref) for ref in iter_references(value)) == ['Network', 'Server.Ip']


class TestResolveValue:
    """Test runtime resolution."""

    outputs = {
        'Network': ProviderResult('net-1', {'Cidr': '10.0.0.0/16', 'Port': 443}),
    }

    def test_resolves_ids_attributes_and_strings(self):
        """Test every reference form."""
        value = {
            'NetworkId': Reference('Network'),
            'Cidr': Reference('Network', 'Cidr'),
            'Url': Interpolation(('https://', Reference('Network'), ':', Reference('Network', 'Port'))),
        }

        assert resolve_value(value, self.outputs, 'Server') == {
            'NetworkId': 'net-1',
            'Cidr': '10.0.0.0/16',
            'Url': 'https://net-1:443',
        }

    def test_missing_attribute_fails(self):
        """Test unreported attributes."""
        with pytest.raises(ReferenceResolutionError) as exc_info:
            resolve_value({'X': Reference('Network', 'Nope')}, self.outputs, 'Server')

        assert exc_info.value.resource_id == 'Server'

    def test_missing_target_fails(self):
        """Test targets without outputs."""
        with pytest.raises(ReferenceResolutionError):
            resolve_value(Reference('Other'), self.outputs, 'Server')


class TestNormalization:
    """Test structural equality used for diffing."""

    def test_mapping_order_is_ignored(self):
        assert canonicalize({'a': 1, 'b': 2}) == canonicalize({'b': 2, 'a': 1})

    def test_list_order_matters(self):
        assert canonicalize([1, 2]) != canonicalize([2, 1])

    def test_set_order_is_ignored(self):
        assert canonicalize(frozenset({'x', 'y'})) == canonicalize(frozenset({'y', 'x'}))

    def test_booleans_differ_from_numbers(self):
        assert canonicalize({'v': True}) != canonicalize({'v': 1})

    def test_references_compare_by_target_and_attribute(self):
        assert canonicalize(Reference('A', 'Arn')) == canonicalize(Reference('A', 'Arn'))
        assert canonicalize(Reference('A', 'Arn')) != canonicalize(Reference('A', 'Id'))

    def test_document_form_round_trips_through_json_shapes(self):
        """Test that the stored form of references is stable."""
        value = {
            'Id': Reference('Network'),
            'Arn': Reference('Network', 'Arn'),
            'Name': Interpolation(('${raw}-', Reference('Network'))),
        }

        assert to_document(value) == {
            'Id': {'Ref': 'Network'},
            'Arn': {'Fn::GetAtt': ['Network', 'Arn']},
            'Name': {'Fn::Sub': '${!raw}-${Network}'},
        }

    def test_sets_serialize_deterministically(self):
        assert to_document(frozenset({'b', 'a'})) == to_document(frozenset({'a', 'b'}))
