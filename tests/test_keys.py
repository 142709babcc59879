import unittest

from gramx.errors import InvalidParticipants
from gramx.keys import ConversationKey, conversation_key


class ConversationKeyTests(unittest.TestCase):
    def test_key_is_order_independent(self):
        self.assertEqual(conversation_key("alice", "bob"), conversation_key("bob", "alice"))

    def test_distinct_partners_give_distinct_keys(self):
        self.assertNotEqual(conversation_key("alice", "bob"), conversation_key("alice", "carol"))

    def test_separator_lookalikes_do_not_collide(self):
        first = conversation_key("a_b", "c")
        second = conversation_key("a", "b_c")
        self.assertNotEqual(first, second)
        self.assertNotEqual(first.storage_key(), second.storage_key())

    def test_prefix_ids_do_not_collide_in_storage(self):
        first = conversation_key("ab", "abc")
        second = conversation_key("a", "babc")
        self.assertNotEqual(first.storage_key(), second.storage_key())

    def test_storage_round_trip(self):
        key = conversation_key("zed:1", "10:amy")
        self.assertEqual(ConversationKey.parse(key.storage_key()), key)

    def test_self_conversation_rejected(self):
        with self.assertRaises(InvalidParticipants):
            conversation_key("alice", "alice")

    def test_malformed_ids_rejected(self):
        for bad in ["", None, 42, " alice", "bob\n", "x\x00y"]:
            with self.subTest(bad=bad):
                with self.assertRaises(InvalidParticipants):
                    conversation_key(bad, "carol")

    def test_partner_of(self):
        key = conversation_key("bob", "alice")
        self.assertEqual(key.participants, ("alice", "bob"))
        self.assertEqual(key.partner_of("alice"), "bob")
        self.assertEqual(key.partner_of("bob"), "alice")
        with self.assertRaises(InvalidParticipants):
            key.partner_of("carol")

    def test_parse_rejects_garbage(self):
        for raw in ["", "alicebob", "x:ab", "0:ab", "5:abc"]:
            with self.subTest(raw=raw):
                with self.assertRaises(InvalidParticipants):
                    ConversationKey.parse(raw)

    def test_unsorted_direct_construction_rejected(self):
        with self.assertRaises(InvalidParticipants):
            ConversationKey("bob", "alice")
