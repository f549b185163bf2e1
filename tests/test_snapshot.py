import unittest

from jsonschema.exceptions import ValidationError

from flagmeter import Snapshot, hash_bucket


def _payload():
    return {
        "features": [
            {
                "name": "Dark mode",
                "feature_id": "dark-mode",
                "type": "BOOLEAN",
                "enabled_value": True,
                "disabled_value": False,
                "enabled": True,
                "rollout_percentage": 100,
                "segment_rules": [
                    {"order": 1, "value": "$default", "rollout_percentage": "$default", "rules": [{"segments": ["us"]}]},
                ],
            },
            {
                "name": "Banner",
                "feature_id": "banner",
                "type": "STRING",
                "enabled_value": "hello",
                "disabled_value": "",
                "enabled": False,
                "segment_rules": [],
            },
        ],
        "properties": [
            {
                "name": "Price tier",
                "property_id": "price-tier",
                "type": "STRING",
                "format": "JSON",
                "value": "{}",
                "segment_rules": [],
            },
            {
                "name": "Limit",
                "property_id": "limit",
                "type": "NUMERIC",
                "value": 10,
                "segment_rules": [],
            },
        ],
        "segments": [
            {
                "name": "US",
                "segment_id": "us",
                "rules": [{"attribute_name": "country", "operator": "is", "values": ["US"]}],
            },
        ],
    }


class TestHashBucket(unittest.TestCase):
    def test_known_buckets(self):
        # MurmurHash3 x86 32 with seed 0: "" -> 0, "foo" -> 0xf6a5c420.
        self.assertEqual(hash_bucket(""), 0)
        self.assertEqual(hash_bucket("foo"), 96)

    def test_range_and_determinism(self):
        for i in range(1000):
            key = f"entity-{i}:feature"
            with self.subTest(key):
                b = hash_bucket(key)
                self.assertIsInstance(b, int)
                self.assertTrue(0 <= b < 100)
                self.assertEqual(b, hash_bucket(key))

    def test_distribution(self):
        n = 20000
        below = sum(1 for i in range(n) if hash_bucket(f"{i}:f1") < 30)
        self.assertAlmostEqual(below / n, 0.3, delta=0.02)


class TestSnapshot(unittest.TestCase):
    def test_from_dict(self):
        s = Snapshot.from_dict(_payload())
        self.assertSetEqual(set(s.features), {"dark-mode", "banner"})
        self.assertSetEqual(set(s.properties), {"price-tier", "limit"})
        self.assertSetEqual(set(s.segments), {"us"})

        f = s.features["dark-mode"]
        self.assertEqual(f.name, "Dark mode")
        self.assertEqual(f.rollout_percentage, 100)
        self.assertIsNone(f.experiment)
        self.assertEqual(len(f.segment_rules), 1)
        rule = f.segment_rules[0]
        self.assertEqual((rule.order, rule.value, rule.rollout_percentage, rule.levels), (1, "$default", "$default", [["us"]]))

    def test_defaults(self):
        s = Snapshot.from_dict(_payload())
        # rollout_percentage defaults to 100 when absent.
        self.assertEqual(s.features["banner"].rollout_percentage, 100)

    def test_lazy_format(self):
        s = Snapshot.from_dict(_payload())
        self.assertIsNone(s.features["dark-mode"].format)
        self.assertEqual(s.features["banner"].format, "TEXT")
        self.assertEqual(s.properties["price-tier"].format, "JSON")
        self.assertIsNone(s.properties["limit"].format)

    def test_environments_shape(self):
        p = _payload()
        payload = {
            "environments": [
                {"environment_id": "dev", "features": [], "properties": p["properties"]},
                {"environment_id": "prod", "features": p["features"], "properties": []},
            ],
            "segments": p["segments"],
        }
        s = Snapshot.from_dict(payload, "prod")
        self.assertSetEqual(set(s.features), {"dark-mode", "banner"})
        self.assertDictEqual(s.properties, {})
        self.assertSetEqual(set(s.segments), {"us"})

        s = Snapshot.from_dict(payload, "unknown")
        self.assertDictEqual(s.features, {})
        self.assertSetEqual(set(s.properties), {"price-tier", "limit"})

    def test_serialization(self):
        s = Snapshot.from_dict(_payload())
        s2 = Snapshot.from_bytes(s.to_bytes())
        self.assertSetEqual(set(s.features), set(s2.features))
        self.assertSetEqual(set(s.segments), set(s2.segments))
        e1 = s.features["dark-mode"].eval("u1", {"country": "US"}, s.segments)
        e2 = s2.features["dark-mode"].eval("u1", {"country": "US"}, s2.segments)
        self.assertEqual((e1.value, e1.segment_id), (e2.value, e2.segment_id))

    def test_invalid_payloads(self):
        def with_feature(**kw):
            p = _payload()
            p["features"][0].update(kw)
            return p

        def without(key):
            p = _payload()
            del p[key]
            return p

        cases = [
            {},
            "not a dict",
            {"features": "not a list", "properties": [], "segments": []},
            without("segments"),
            with_feature(feature_id=""),
            with_feature(type="DATE"),
            with_feature(enabled="yes"),
            with_feature(rollout_percentage=150),
            with_feature(rollout_percentage=-1),
            with_feature(segment_rules=[{"order": 0, "rules": []}]),
            with_feature(segment_rules=[{"order": 1, "rules": [], "rollout_percentage": "half"}]),
            with_feature(experiment={"experiment_id": "e1"}),
        ]
        for case in cases:
            with self.subTest(case):
                with self.assertRaises(ValidationError):
                    Snapshot.from_dict(case)
