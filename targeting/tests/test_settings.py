import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from targeting.config_loader import load_outlets_config
from targeting.errors import InvalidCriteria
from targeting.models import Tier
from targeting.outlets import OutletDirectory
from targeting.schemas import parse_criteria, parse_policy
from targeting.settings import DEFAULT_OUTLETS_PATH, load_settings

CLEAN_ENV = {key: value for key, value in os.environ.items() if not key.startswith("TARGETING_")}


class SettingsTests(unittest.TestCase):
    @patch.dict(os.environ, CLEAN_ENV, clear=True)
    def test_defaults(self):
        settings = load_settings()
        self.assertEqual(settings.outlets_path, DEFAULT_OUTLETS_PATH)
        self.assertEqual(settings.db_path, Path("targeting_data.db"))
        self.assertEqual(settings.min_approved_matches, 3)
        self.assertEqual(settings.monitor_concurrency, 4)
        self.assertEqual(settings.rematch_lookback_hours, 72)
        self.assertEqual(settings.log_level, "INFO")
        self.assertAlmostEqual(settings.weights.relevance, 0.5)

    @patch.dict(
        os.environ,
        {
            "TARGETING_DB_PATH": "/tmp/custom.db",
            "TARGETING_MONITOR_CONCURRENCY": "8",
            "TARGETING_MIN_APPROVED_MATCHES": "not-a-number",
            "TARGETING_READ_BACKOFF": "0.5",
            "TARGETING_LOG_LEVEL": "debug",
        },
    )
    def test_env_overrides_and_invalid_values_fall_back(self):
        with self.assertLogs("targeting.settings", level="WARNING"):
            settings = load_settings()
        self.assertEqual(settings.db_path, Path("/tmp/custom.db"))
        self.assertEqual(settings.monitor_concurrency, 8)
        self.assertEqual(settings.min_approved_matches, 3)
        self.assertAlmostEqual(settings.read_backoff_seconds, 0.5)
        self.assertEqual(settings.log_level, "DEBUG")

    @patch.dict(
        os.environ,
        {"TARGETING_WEIGHT_RELEVANCE": "0.9", "TARGETING_WEIGHT_VISIBILITY": "0.3", "TARGETING_WEIGHT_FRESHNESS": "0.2"},
    )
    def test_weights_not_summing_to_one_fail_at_startup(self):
        with self.assertRaises(InvalidCriteria):
            load_settings()


    @patch.dict(
        os.environ,
        {"TARGETING_WEIGHT_RELEVANCE": "-0.5", "TARGETING_WEIGHT_VISIBILITY": "1.3", "TARGETING_WEIGHT_FRESHNESS": "0.2"},
    )
    def test_negative_weight_is_rejected_not_replaced(self):
        with self.assertRaises(InvalidCriteria) as ctx:
            load_settings()
        self.assertIn("relevance", str(ctx.exception))

    @patch.dict(os.environ, {"TARGETING_READ_RETRIES": "0", "TARGETING_MONITOR_TIMEOUT": "-1"})
    def test_values_below_floor_warn_and_fall_back(self):
        with self.assertLogs("targeting.settings", level="WARNING") as logs:
            settings = load_settings()
        self.assertEqual(settings.read_retries, 3)
        self.assertAlmostEqual(settings.monitor_timeout_seconds, 30.0)
        self.assertEqual(len(logs.records), 2)


class OutletsConfigTests(unittest.TestCase):
    def test_env_values_are_expanded(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "outlets.yaml"
            path.write_text(
                "visibility:\n  A: 0.9\ntiers:\n  A:\n    - ${HOUSE_OUTLET}\n  Z:\n    - Nowhere\n",
                encoding="utf-8",
            )
            with patch.dict(os.environ, {"HOUSE_OUTLET": "Daily Planet"}):
                config = load_outlets_config(path)
                with self.assertLogs("targeting.outlets", level="WARNING"):
                    outlets = OutletDirectory.from_config(path)

        self.assertEqual(config["tiers"]["A"], ["Daily Planet"])
        self.assertEqual(outlets.tier_for("daily planet"), Tier.A)
        self.assertAlmostEqual(outlets.visibility_for(Tier.A), 0.9)
        self.assertEqual(len(outlets), 1)

    def test_references_inside_strings_are_expanded(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "outlets.yaml"
            path.write_text("tiers:\n  B:\n    - ${CITY} Herald\n    - ${UNSET_OUTLET_NAME}Times\n", encoding="utf-8")
            with patch.dict(os.environ, {"CITY": "Gotham"}):
                os.environ.pop("UNSET_OUTLET_NAME", None)
                config = load_outlets_config(path)

        self.assertEqual(config["tiers"]["B"], ["Gotham Herald", "Times"])

    def test_missing_file_yields_empty_directory(self):
        with self.assertLogs("targeting.config_loader", level="WARNING"):
            config = load_outlets_config(Path("/nonexistent/outlets.yaml"))
        self.assertEqual(config, {})


class PayloadValidationTests(unittest.TestCase):
    def test_criteria_payload_is_cleaned(self):
        criteria = parse_criteria(
            {"keywords": [" AI ", "ai", "", "funding"], "outlet_tiers": ["A"], "freshness_window_hours": 12}
        )
        self.assertEqual(criteria.keywords, ["AI", "funding"])
        self.assertEqual(criteria.outlet_tiers, [Tier.A])
        self.assertEqual(criteria.freshness_window.total_seconds(), 12 * 3600)

    def test_bad_criteria_raise_invalid_criteria(self):
        for payload in (
            {"keywords": ["AI"], "min_relevance": 1.5},
            {"keywords": ["AI"], "freshness_window_hours": 0},
            {"keywords": ["AI"], "outlet_tiers": ["Z"]},
            {"keywords": ["AI"], "min_tier_a_matches": -1},
        ):
            with self.subTest(payload=payload):
                with self.assertRaises(InvalidCriteria):
                    parse_criteria(payload)

    def test_policy_validation(self):
        policy = parse_policy({"min_score": 0.8, "min_tier": "A", "max_count": 2})
        self.assertEqual(policy.min_tier, Tier.A)
        self.assertFalse(policy.dry_run)
        self.assertIsNone(parse_policy(None).max_count)
        with self.assertRaises(InvalidCriteria):
            parse_policy({"min_score": 2})
        with self.assertRaises(InvalidCriteria):
            parse_policy({"max_count": -1})


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
