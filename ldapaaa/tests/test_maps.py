"""
Tests for attribute lists and the attribute map.
"""

import unittest

from ldapaaa.attributes import AttributeList, Identity, Request, parse_pair
from ldapaaa.exceptions import AttributeMapOverflow
from ldapaaa.maps import AttributeMapper, ExpandedMap, MappingRule

USER_DN = "uid=alice,ou=people,dc=example,dc=com"


class TestAttributeList(unittest.TestCase):
    """Test :py:class:`AttributeList`."""

    def setUp(self):
        self.attrs = AttributeList({"Reply-Message": "hello", "Class": ["a", "b"]})

    def test_names_are_case_insensitive(self):
        self.assertIn("reply-message", self.attrs)
        self.assertEqual(self.attrs.get("REPLY-MESSAGE"), "hello")
        self.assertEqual(self.attrs.get_all("class"), ["a", "b"])
        self.assertEqual(list(self.attrs), ["Reply-Message", "Class"])
        self.assertEqual(len(self.attrs), 3)

    def test_replace(self):
        self.assertEqual(self.attrs.apply("Class", ":=", ["c"]), 1)
        self.assertEqual(self.attrs.get_all("Class"), ["c"])

    def test_append(self):
        self.attrs.apply("Class", "+=", ["c", "d"])
        self.assertEqual(self.attrs.get_all("Class"), ["a", "b", "c", "d"])

    def test_set_if_absent(self):
        self.assertEqual(self.attrs.apply("Reply-Message", "=", ["bye"]), 0)
        self.assertEqual(self.attrs.get("Reply-Message"), "hello")
        self.assertEqual(self.attrs.apply("Session-Timeout", "=", ["3600"]), 1)
        self.assertEqual(self.attrs.get("Session-Timeout"), "3600")

    def test_replace_with_same_values_changes_nothing(self):
        self.assertEqual(self.attrs.apply("Class", ":=", ["a", "b"]), 0)

    def test_remove(self):
        self.assertEqual(self.attrs.apply("Class", "-=", ["a", "z"]), 1)
        self.assertEqual(self.attrs.apply("Class", "-=", ["z"]), 0)
        self.assertEqual(self.attrs.get_all("Class"), ["b"])
        self.attrs.apply("Class", "!=", ["b"])
        self.assertNotIn("Class", self.attrs)

    def test_filter(self):
        self.assertEqual(self.attrs.apply("Class", "==", ["b", "z"]), 1)
        self.assertEqual(self.attrs.get_all("Class"), ["b"])
        self.assertEqual(self.attrs.apply("Class", "==", ["b"]), 0)

    def test_unknown_operator(self):
        with self.assertRaises(ValueError):
            self.attrs.apply("Class", "<=", ["x"])


class TestRequest(unittest.TestCase):
    """Test :py:class:`Request`."""

    def test_from_identity(self):
        request = Request.from_identity(Identity("alice", "secret"))
        self.assertEqual(request.username, "alice")
        self.assertEqual(request.password, "secret")
        self.assertFalse(request.membership_cache.populated)

    def test_config_is_control(self):
        request = Request(control={"Cleartext-Password": "x"})
        self.assertIs(request.get_list("config"), request.control)
        with self.assertRaises(KeyError):
            request.get_list("session-state")

    def test_parse_pair(self):
        pair = parse_pair('control:Cleartext-Password := "secret"')
        self.assertEqual(
            (pair.list_name, pair.attribute, pair.operator, pair.value),
            ("control", "Cleartext-Password", ":=", "secret"),
        )
        self.assertEqual(parse_pair("Session-Timeout = 3600").list_name, "reply")
        with self.assertRaises(ValueError):
            parse_pair("garbage")
        with self.assertRaises(ValueError):
            parse_pair("bogus:Session-Timeout = 3600")


class TestMappingRule(unittest.TestCase):
    """Test mapping rule parsing."""

    def test_bare_source(self):
        rule = MappingRule.parse("reply:Reply-Message := radiusReplyMessage")
        self.assertEqual(rule.list_name, "reply")
        self.assertEqual(rule.attribute, "Reply-Message")
        self.assertEqual(rule.operator, ":=")
        self.assertEqual(rule.source, "radiusReplyMessage")
        self.assertFalse(rule.templated)

    def test_quoted_sources(self):
        rule = MappingRule.parse("control:Password-With-Header += 'userPassword'")
        self.assertEqual(rule.source, "userPassword")
        self.assertFalse(rule.templated)
        rule = MappingRule.parse('Filter-Id := "%{control:Filter-Attribute}"')
        self.assertEqual(rule.list_name, "reply")
        self.assertTrue(rule.templated)

    def test_dictionary(self):
        rule = MappingRule.parse(
            {"attribute": "Reply-Message", "source": "description", "list": "reply", "expand": True}
        )
        self.assertEqual(rule.operator, ":=")
        self.assertTrue(rule.expand_values)
        with self.assertRaises(ValueError):
            MappingRule.parse({"attribute": "Reply-Message"})

    def test_invalid(self):
        for rule in ("Reply-Message", "bogus:Reply-Message := x", "Reply-Message := ''"):
            with self.subTest(rule=rule), self.assertRaises(ValueError):
                MappingRule.parse(rule)


class TestAttributeMapper(unittest.TestCase):
    """Test expanding the attribute map and applying it to entries."""

    def setUp(self):
        self.request = Request(
            packet={"User-Name": "alice"},
            control={"Filter-Attribute": "radiusFilterId"},
        )
        self.mapper = AttributeMapper(
            [
                MappingRule.parse("control:Password-With-Header += 'userPassword'"),
                MappingRule.parse("reply:Reply-Message := radiusReplyMessage"),
                MappingRule.parse('reply:Filter-Id := "%{control:Filter-Attribute}"'),
                MappingRule.parse("control:LDAP-Entry-DN := dn"),
            ],
            128,
            valuepair_attribute="radiusAttribute",
        )

    def test_expand(self):
        with self.mapper.expand(self.request, ["dialupAccess"]) as expanded:
            self.assertEqual(
                expanded.attributes,
                ["userPassword", "radiusReplyMessage", "radiusFilterId", "dn", "dialupAccess"],
            )
            self.assertIsNone(expanded.rules[-1])
        # the map is released at the end of the with block
        self.assertEqual(expanded.count, 0)

    def test_empty_templated_source_is_skipped(self):
        self.request.control.remove("Filter-Attribute")
        expanded = self.mapper.expand(self.request)
        self.assertNotIn("", expanded.attributes)
        self.assertEqual(expanded.count, 3)

    def test_capacity(self):
        mapper = AttributeMapper(self.mapper.rules, 4)
        mapper.expand(self.request)
        with self.assertRaises(AttributeMapOverflow) as cm:
            mapper.expand(self.request, ["dialupAccess"])
        self.assertIn("max_attrmap", str(cm.exception))

    def test_expanded_map_append_past_capacity(self):
        expanded = ExpandedMap(1)
        expanded.append("cn")
        with self.assertRaises(AttributeMapOverflow):
            expanded.append("sn")
        self.assertEqual(expanded.attributes, ["cn"])

    def test_apply(self):
        entry = {
            "userPassword": [b"{SSHA}abc"],
            "RADIUSREPLYMESSAGE": [b"Welcome"],
            "radiusFilterId": [b"std.ingress"],
            "radiusAttribute": [b"reply:Session-Timeout := 3600", b"not a pair"],
        }
        expanded = self.mapper.expand(self.request)
        applied = self.mapper.apply(expanded, USER_DN, entry, self.request)
        self.assertEqual(applied, 5)
        self.assertEqual(self.request.control.get("Password-With-Header"), "{SSHA}abc")
        self.assertEqual(self.request.reply.get("Reply-Message"), "Welcome")
        self.assertEqual(self.request.reply.get("Filter-Id"), "std.ingress")
        self.assertEqual(self.request.control.get("LDAP-Entry-DN"), USER_DN)
        self.assertEqual(self.request.reply.get("Session-Timeout"), "3600")

    def test_missing_attribute_contributes_nothing(self):
        entry = {"radiusFilterId": [b"std.ingress"]}
        expanded = self.mapper.expand(self.request)
        applied = self.mapper.apply(expanded, USER_DN, entry, self.request)
        # dn and Filter-Id only; the missing ones do not stop the rest
        self.assertEqual(applied, 2)
        self.assertNotIn("Reply-Message", self.request.reply)
        self.assertEqual(self.request.reply.get("Filter-Id"), "std.ingress")

    def test_values_that_change_nothing_are_not_counted(self):
        mapper = AttributeMapper([MappingRule.parse("reply:Class -= cn")], 8)
        expanded = mapper.expand(self.request)
        applied = mapper.apply(expanded, USER_DN, {"cn": [b"Alice"]}, self.request)
        self.assertEqual(applied, 0)
        self.assertNotIn("Class", self.request.reply)

    def test_expand_values(self):
        mapper = AttributeMapper(
            [MappingRule("Reply-Message", ":=", "description", expand_values=True)], 8
        )
        expanded = mapper.expand(self.request)
        mapper.apply(expanded, USER_DN, {"description": [b"Hello %{User-Name}"]}, self.request)
        self.assertEqual(self.request.reply.get("Reply-Message"), "Hello alice")
