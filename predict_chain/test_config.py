"""
Tests for configuration loading and validation.
"""
import os
import json
import shutil
import tempfile
import unittest

from predict_chain.config import (
    Config,
    DISPUTE_WINDOW_SECONDS,
    MarketConfig,
    ReconcilerConfig,
)
from predict_chain.errors import ConfigError
from predict_chain.lmsr import FeeSchedule, MIN_B


class TestConfig(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_defaults(self):
        config = Config.default()
        self.assertEqual(config.market.proposal_approval_threshold_bps, 7000)
        self.assertEqual(config.market.dispute_threshold_bps, 6000)
        self.assertEqual(config.market.dispute_window_seconds, DISPUTE_WINDOW_SECONDS)
        self.assertEqual(config.market.min_liquidity_parameter, MIN_B)
        self.assertEqual(config.reconciler.scan_interval_seconds, 300)
        self.assertEqual(config.reconciler.max_retries, 3)
        self.assertFalse(config.monitoring.enabled)
        config.validate()

    def test_fee_schedule(self):
        self.assertEqual(MarketConfig().fee_schedule(), FeeSchedule(1000, 300, 200, 500))

    def test_file_round_trip(self):
        path = os.path.join(self.temp_dir, 'conf', 'node.json')
        config = Config.default()
        config.reconciler.batch_size = 25
        config.market.fee_total_bps = 800
        config.market.fee_lp_bps = 300
        config.to_file(path)

        loaded = Config.from_file(path)
        self.assertEqual(loaded.reconciler.batch_size, 25)
        self.assertEqual(loaded.market.fee_total_bps, 800)
        self.assertEqual(loaded.to_dict(), config.to_dict())

    def test_partial_dict_keeps_defaults(self):
        config = Config.from_dict({'monitoring': {'enabled': True, 'port': 9191}})
        self.assertTrue(config.monitoring.enabled)
        self.assertEqual(config.monitoring.port, 9191)
        self.assertEqual(config.market.min_proposal_votes, 10)

    def test_unknown_key_rejected(self):
        with self.assertRaises(ConfigError):
            Config.from_dict({'market': {'fee_bps': 10}})

    def test_unknown_key_in_file_rejected(self):
        path = os.path.join(self.temp_dir, 'bad.json')
        with open(path, 'w') as f:
            json.dump({'reconciler': {'scan_every': 5}}, f)
        with self.assertRaises(ConfigError):
            Config.from_file(path)


class TestValidation(unittest.TestCase):
    def test_fee_shares_exceed_total(self):
        with self.assertRaises(ConfigError):
            MarketConfig(fee_total_bps=500).validate()

    def test_threshold_out_of_range(self):
        with self.assertRaises(ConfigError):
            MarketConfig(proposal_approval_threshold_bps=10_001).validate()

    def test_non_positive_liquidity_floor(self):
        with self.assertRaises(ConfigError):
            MarketConfig(min_liquidity_parameter=0).validate()

    def test_negative_window(self):
        with self.assertRaises(ConfigError):
            MarketConfig(dispute_window_seconds=-1).validate()

    def test_reconciler_limits(self):
        with self.assertRaises(ConfigError):
            ReconcilerConfig(scan_interval_seconds=0).validate()
        with self.assertRaises(ConfigError):
            ReconcilerConfig(max_retries=0).validate()
        with self.assertRaises(ConfigError):
            ReconcilerConfig(retry_initial_delay=30.0, retry_max_delay=20.0).validate()
        with self.assertRaises(ConfigError):
            ReconcilerConfig(submit_timeout_seconds=0).validate()

    def test_config_error_is_value_error(self):
        with self.assertRaises(ValueError):
            Config.from_dict({'reconciler': {'batch_size': 0}})


if __name__ == '__main__':
    unittest.main()
