import sys
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch
# Add src to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from lxml import etree

from merging.accumulator import MergedConfig
from merging.emitter import emit_document, serialize_document
from merging.merger import discover_config_files, merge_configs
from models.sysmon_config import EventKind, GroupRelation, MatchPolarity
from parsers.config_parser import parse_config_content, parse_config_file
from utils.errors import (
    ConfigIOError,
    ConfigSyntaxError,
    Invariant,
    MergeLimitError,
    MergeOutputInvalidError,
    NoInputConfigsError,
    StructuralViolationError,
)
from validation.validator import validate

PROCESS_INCLUDE = (EventKind.PROCESS_CREATE, MatchPolarity.INCLUDE)


def fragment(blocks_xml, relation="or", version="4.90", settings_xml=""):
    return (f'<Sysmon schemaversion="{version}">{settings_xml}<EventFiltering>'
            f'<RuleGroup name="" groupRelation="{relation}">{blocks_xml}</RuleGroup>'
            f'</EventFiltering></Sysmon>')


FRAGMENT_A = fragment(
    '<ProcessCreate onmatch="include"><Image condition="is">cmd.exe</Image></ProcessCreate>')
FRAGMENT_B = fragment(
    '<ProcessCreate onmatch="include">'
    '<Image condition="is">cmd.exe</Image>'
    '<CommandLine condition="contains">powershell</CommandLine>'
    '</ProcessCreate>')
FRAGMENT_C = fragment(
    '<NetworkConnect onmatch="include"><DestinationPort condition="is">445</DestinationPort></NetworkConnect>'
    '<ProcessCreate onmatch="exclude"><Image condition="begin with">C:\\Program Files\\</Image></ProcessCreate>',
    version="4.50", settings_xml='<HashAlgorithms>*</HashAlgorithms>')
FRAGMENT_AND = fragment(
    '<ProcessCreate onmatch="include"><Image condition="is">cmd.exe</Image>'
    '<ParentImage condition="image">winword.exe</ParentImage></ProcessCreate>', relation="and")


class TestMergedConfig(unittest.TestCase):
    def test_fold_deduplicates_entries(self):
        merged = MergedConfig()
        merged.fold(parse_config_content(FRAGMENT_A)).fold(parse_config_content(FRAGMENT_B))

        entries = merged.entries_for(PROCESS_INCLUDE, GroupRelation.OR)
        self.assertEqual([e.identity for e in entries], [
            ('Image', 'is', 'cmd.exe'),
            ('CommandLine', 'contains', 'powershell'),
        ])
        self.assertEqual(merged.duplicates_dropped, 1)
        self.assertEqual(merged.fragments_folded, 2)

    def test_fold_same_fragment_twice_is_idempotent(self):
        once = MergedConfig().fold(parse_config_content(FRAGMENT_B))
        twice = MergedConfig().fold(parse_config_content(FRAGMENT_B)).fold(parse_config_content(FRAGMENT_B))
        self.assertEqual(serialize_document(emit_document(once)),
                         serialize_document(emit_document(twice)))

    def test_relations_are_kept_apart(self):
        merged = MergedConfig()
        merged.fold(parse_config_content(FRAGMENT_A)).fold(parse_config_content(FRAGMENT_AND))

        self.assertEqual(merged.relations, [GroupRelation.OR, GroupRelation.AND])
        self.assertEqual(merged.relations_by_key[PROCESS_INCLUDE], [GroupRelation.OR, GroupRelation.AND])
        # The shared Image rule stays in both groups; it means something different in each.
        self.assertEqual(len(merged.entries_for(PROCESS_INCLUDE, GroupRelation.OR)), 1)
        self.assertEqual(len(merged.entries_for(PROCESS_INCLUDE, GroupRelation.AND)), 2)

    def test_keeps_highest_schema_version_and_first_settings(self):
        merged = MergedConfig()
        merged.fold(parse_config_content(FRAGMENT_C))
        merged.fold(parse_config_content(fragment('<FileCreate onmatch="include"/>',
                                                  settings_xml='<HashAlgorithms>md5</HashAlgorithms>')))
        merged.fold(parse_config_content(fragment('<DnsQuery onmatch="exclude"/>', version="4.10")))
        self.assertEqual(merged.schema_version, '4.90')
        self.assertEqual(merged.settings['HashAlgorithms'], b'<HashAlgorithms>*</HashAlgorithms>')

    def test_schema_version_with_non_ascii_digits(self):
        merged = MergedConfig()
        merged.fold(parse_config_content(FRAGMENT_A))
        merged.fold(parse_config_content(fragment('<DnsQuery onmatch="exclude"/>', version="4.\u00b2")))
        self.assertEqual(merged.schema_version, '4.\u00b2')

    def test_compound_rules_are_deduplicated(self):
        first = fragment('<ProcessCreate onmatch="include"><Rule name="a" groupRelation="and">'
                         '<Image condition="image">mshta.exe</Image>'
                         '<CommandLine condition="contains">http</CommandLine></Rule></ProcessCreate>')
        second = fragment('<ProcessCreate onmatch="include"><Rule name="b" groupRelation="and">'
                          '<CommandLine condition="contains">http</CommandLine>'
                          '<Image condition="image">mshta.exe</Image></Rule></ProcessCreate>')
        merged = MergedConfig().fold(parse_config_content(first)).fold(parse_config_content(second))
        entries = merged.entries_for(PROCESS_INCLUDE, GroupRelation.OR)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].name, 'a')


class TestEmitter(unittest.TestCase):
    def test_emits_one_group_per_relation_in_first_seen_order(self):
        merged = MergedConfig()
        for content in (FRAGMENT_AND, FRAGMENT_A, FRAGMENT_C):
            merged.fold(parse_config_content(content))
        root = emit_document(merged)

        self.assertIsNone(validate(root))
        self.assertEqual(root.get('schemaversion'), '4.90')
        self.assertEqual(root[0].tag, 'HashAlgorithms')

        groups = root.findall('EventFiltering/RuleGroup')
        self.assertEqual([g.get('groupRelation') for g in groups], ['and', 'or'])
        self.assertEqual([(b.tag, b.get('onmatch')) for b in groups[1]], [
            ('ProcessCreate', 'include'),
            ('NetworkConnect', 'include'),
            ('ProcessCreate', 'exclude'),
        ])

    def test_serialization_is_deterministic(self):
        def build():
            merged = MergedConfig()
            for content in (FRAGMENT_A, FRAGMENT_B, FRAGMENT_C):
                merged.fold(parse_config_content(content))
            return serialize_document(emit_document(merged))

        first = build()
        self.assertEqual(first, build())
        self.assertTrue(first.startswith(b"<?xml version='1.0' encoding='UTF-8'?>"))
        self.assertTrue(first.endswith(b'\n'))

    def test_entry_attributes(self):
        merged = MergedConfig().fold(parse_config_content(fragment(
            '<ProcessCreate onmatch="include">'
            '<Image name="technique_id=T1059" condition="image">cmd.exe</Image>'
            '<Rule groupRelation="and"><Image condition="image">a.exe</Image>'
            '<CommandLine condition="contains">b</CommandLine></Rule></ProcessCreate>')))
        block = emit_document(merged).find('EventFiltering/RuleGroup/ProcessCreate')
        image, rule = list(block)
        self.assertEqual(dict(image.attrib), {'name': 'technique_id=T1059', 'condition': 'image'})
        self.assertEqual(image.text, 'cmd.exe')
        self.assertEqual(rule.tag, 'Rule')
        self.assertEqual(rule.get('groupRelation'), 'and')
        self.assertEqual(len(rule), 2)


class MergeDirTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = self.tmp.name

    def write(self, relative, content):
        path = os.path.join(self.root, relative)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(content)
        return path

    def out(self, name='merged.xml'):
        return os.path.join(self.root, 'out', name)


class TestMergeConfigs(MergeDirTestCase):
    def test_duplicate_rule_collapses(self):
        self.write('in/a.xml', FRAGMENT_A)
        self.write('in/b.xml', FRAGMENT_B)

        result = merge_configs(os.path.join(self.root, 'in'), self.out())

        self.assertEqual(result.files_merged, 2)
        self.assertEqual(result.entries, 2)
        self.assertEqual(result.duplicates_dropped, 1)

        root = etree.parse(self.out()).getroot()
        groups = root.findall('EventFiltering/RuleGroup')
        self.assertEqual(len(groups), 1)
        blocks = groups[0].findall('ProcessCreate')
        self.assertEqual(len(blocks), 1)
        self.assertEqual(blocks[0].get('onmatch'), 'include')
        self.assertEqual([(e.tag, e.get('condition'), e.text) for e in blocks[0]], [
            ('Image', 'is', 'cmd.exe'),
            ('CommandLine', 'contains', 'powershell'),
        ])

    def test_relation_conflict_yields_two_groups(self):
        self.write('in/a.xml', FRAGMENT_A)
        self.write('in/b.xml', FRAGMENT_AND)

        merge_configs(os.path.join(self.root, 'in'), self.out())

        groups = etree.parse(self.out()).getroot().findall('EventFiltering/RuleGroup')
        self.assertEqual([g.get('groupRelation') for g in groups], ['or', 'and'])
        self.assertEqual(len(groups[0].find('ProcessCreate')), 1)
        self.assertEqual(len(groups[1].find('ProcessCreate')), 2)

    def test_idempotent_with_previous_output(self):
        for name, content in (('a.xml', FRAGMENT_A), ('b.xml', FRAGMENT_B), ('c.xml', FRAGMENT_C)):
            self.write(f'in/{name}', content)
        merge_configs(os.path.join(self.root, 'in'), self.out('first.xml'))

        shutil.copytree(os.path.join(self.root, 'in'), os.path.join(self.root, 'again'))
        shutil.copy(self.out('first.xml'), os.path.join(self.root, 'again', 'zz_previous.xml'))
        merge_configs(os.path.join(self.root, 'again'), self.out('second.xml'))

        first = parse_config_file(self.out('first.xml'))
        second = parse_config_file(self.out('second.xml'))
        self.assertEqual(first.entries_by_key(), second.entries_by_key())
        with open(self.out('first.xml'), 'rb') as f1, open(self.out('second.xml'), 'rb') as f2:
            self.assertEqual(f1.read(), f2.read())

    def test_retained_rules_do_not_depend_on_order(self):
        contents = [FRAGMENT_A, FRAGMENT_B, FRAGMENT_C, FRAGMENT_AND]
        for i, content in enumerate(contents):
            self.write(f'forward/{i}.xml', content)
            self.write(f'backward/{len(contents) - 1 - i}.xml', content)

        merge_configs(os.path.join(self.root, 'forward'), self.out('forward.xml'))
        merge_configs(os.path.join(self.root, 'backward'), self.out('backward.xml'))

        forward = parse_config_file(self.out('forward.xml'))
        backward = parse_config_file(self.out('backward.xml'))
        self.assertEqual(forward.entries_by_key(), backward.entries_by_key())

    def test_output_is_valid_and_deterministic(self):
        self.write('in/a.xml', FRAGMENT_A)
        self.write('in/c.xml', FRAGMENT_C)
        merge_configs(os.path.join(self.root, 'in'), self.out('1.xml'))
        merge_configs(os.path.join(self.root, 'in'), self.out('2.xml'))

        with open(self.out('1.xml'), 'rb') as f1, open(self.out('2.xml'), 'rb') as f2:
            self.assertEqual(f1.read(), f2.read())
        self.assertIsNone(validate(etree.parse(self.out('1.xml')).getroot()))

    def test_empty_blocks_survive(self):
        self.write('in/a.xml', fragment('<ProcessTerminate onmatch="include"/>'))
        merge_configs(os.path.join(self.root, 'in'), self.out())
        block = etree.parse(self.out()).getroot().find('EventFiltering/RuleGroup/ProcessTerminate')
        self.assertIsNotNone(block)
        self.assertEqual(len(block), 0)

    def test_recursive_flag(self):
        self.write('in/a.xml', FRAGMENT_A)
        self.write('in/sub/c.xml', FRAGMENT_C)

        flat = merge_configs(os.path.join(self.root, 'in'), self.out('flat.xml'))
        deep = merge_configs(os.path.join(self.root, 'in'), self.out('deep.xml'), recursive=True)

        self.assertEqual(flat.files_merged, 1)
        self.assertEqual(deep.files_merged, 2)

    def test_output_inside_input_is_not_merged(self):
        self.write('in/a.xml', FRAGMENT_A)
        output = os.path.join(self.root, 'in', 'merged.xml')
        merge_configs(os.path.join(self.root, 'in'), output)
        result = merge_configs(os.path.join(self.root, 'in'), output)
        self.assertEqual(result.files_merged, 1)

    def test_invalid_fragment_aborts_and_leaves_no_output(self):
        self.write('in/a.xml', FRAGMENT_A)
        self.write('in/b.xml', '<Sysmon><EventFiltering></EventFiltering></Sysmon>')

        with self.assertRaises(StructuralViolationError) as ctx:
            merge_configs(os.path.join(self.root, 'in'), self.out())

        self.assertEqual(ctx.exception.invariant, Invariant.RULE_GROUP_REQUIRED)
        self.assertTrue(ctx.exception.path.endswith('b.xml'))
        self.assertFalse(os.path.exists(self.out()))

    def test_unwrapped_event_type_aborts_and_leaves_no_output(self):
        self.write('in/a.xml', FRAGMENT_A)
        self.write('in/b.xml', '<Sysmon><EventFiltering><RuleGroup/><ProcessCreate/></EventFiltering></Sysmon>')

        with self.assertRaises(StructuralViolationError) as ctx:
            merge_configs(os.path.join(self.root, 'in'), self.out())

        self.assertEqual(ctx.exception.invariant, Invariant.EVENT_TYPES_IN_RULE_GROUP)
        self.assertEqual(ctx.exception.violation.element_path, '/Sysmon/EventFiltering/ProcessCreate')
        self.assertFalse(os.path.exists(self.out()))

    @unittest.skipUnless(os.name == 'posix', 'POSIX permissions')
    def test_new_output_follows_umask(self):
        self.write('in/a.xml', FRAGMENT_A)
        umask = os.umask(0)
        os.umask(umask)

        merge_configs(os.path.join(self.root, 'in'), self.out())

        self.assertEqual(os.stat(self.out()).st_mode & 0o777, 0o666 & ~umask)

    @unittest.skipUnless(os.name == 'posix', 'POSIX permissions')
    def test_existing_output_keeps_its_mode(self):
        self.write('in/a.xml', FRAGMENT_A)
        self.write('out/merged.xml', 'old')
        os.chmod(self.out(), 0o640)

        merge_configs(os.path.join(self.root, 'in'), self.out())

        self.assertEqual(os.stat(self.out()).st_mode & 0o777, 0o640)

    def test_malformed_fragment_aborts(self):
        self.write('in/a.xml', '<Sysmon><EventFiltering>')
        with self.assertRaises(ConfigSyntaxError):
            merge_configs(os.path.join(self.root, 'in'), self.out())
        self.assertFalse(os.path.exists(self.out()))

    def test_skip_invalid(self):
        self.write('in/a.xml', FRAGMENT_A)
        self.write('in/b.xml', '<Sysmon><ProcessCreate onmatch="include"/></Sysmon>')

        result = merge_configs(os.path.join(self.root, 'in'), self.out(), skip_invalid=True)

        self.assertEqual(result.files_merged, 1)
        self.assertEqual(result.files_skipped, 1)
        self.assertTrue(os.path.exists(self.out()))

    def test_no_input_configs(self):
        os.makedirs(os.path.join(self.root, 'in'))
        self.write('in/readme.txt', 'not a config')
        with self.assertRaises(NoInputConfigsError):
            merge_configs(os.path.join(self.root, 'in'), self.out())

    def test_only_invalid_fragments_skipped_is_no_input(self):
        self.write('in/b.xml', '<Sysmon><EventFiltering></EventFiltering></Sysmon>')
        with self.assertRaises(NoInputConfigsError):
            merge_configs(os.path.join(self.root, 'in'), self.out(), skip_invalid=True)

    def test_input_must_be_directory(self):
        path = self.write('a.xml', FRAGMENT_A)
        with self.assertRaises(ConfigIOError):
            merge_configs(path, self.out())

    def test_max_files(self):
        self.write('in/a.xml', FRAGMENT_A)
        self.write('in/b.xml', FRAGMENT_B)
        with self.assertRaises(MergeLimitError):
            merge_configs(os.path.join(self.root, 'in'), self.out(), max_files=1)

    def test_invalid_emitted_output_is_reported_as_engine_error(self):
        self.write('in/a.xml', FRAGMENT_A)
        with patch('merging.merger.emit_document', return_value=etree.Element('Sysmon')):
            with self.assertRaises(MergeOutputInvalidError) as ctx:
                merge_configs(os.path.join(self.root, 'in'), self.out())
        self.assertEqual(ctx.exception.violation.invariant, Invariant.RULES_IN_EVENT_FILTERING)
        self.assertFalse(os.path.exists(self.out()))


class TestDiscoverConfigFiles(MergeDirTestCase):
    def test_sorted_relative_order_with_limits(self):
        for relative in ('b.xml', 'a.XML', 'notes.txt', 'sub/c.xml', 'sub/deeper/d.xml', 'skip_me.xml'):
            self.write(f'in/{relative}', FRAGMENT_A)
        base = os.path.join(self.root, 'in')

        def names(**kwargs):
            return [os.path.relpath(p, base).replace(os.sep, '/') for p in discover_config_files(base, **kwargs)]

        self.assertEqual(names(), ['a.XML', 'b.xml', 'skip_me.xml'])
        self.assertEqual(names(recursive=True),
                         ['a.XML', 'b.xml', 'skip_me.xml', 'sub/c.xml', 'sub/deeper/d.xml'])
        self.assertEqual(names(recursive=True, max_depth=1),
                         ['a.XML', 'b.xml', 'skip_me.xml', 'sub/c.xml'])
        self.assertEqual(names(recursive=True, ignore_patterns=['skip_*', 'sub/deeper/*']),
                         ['a.XML', 'b.xml', 'sub/c.xml'])


if __name__ == '__main__':
    unittest.main()
