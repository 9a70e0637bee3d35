import random
import unittest

from bot_fleet.models import DecisionType
from bot_fleet.strategy.evaluator import StrategyEvaluator, evaluate_condition
from bot_fleet.strategy.parser import parse_rule_set
from bot_fleet.strategy.rules import AllOf, AnyOf, Comparison, FactRef, Not, RandomChance, RangeCondition


def _evaluator(raw):
    return StrategyEvaluator(parse_rule_set(raw))


class TestStrategyEvaluator(unittest.TestCase):
    def test_empty_rule_list_returns_none(self):
        ev = StrategyEvaluator([])
        self.assertIsNone(ev.evaluate({"currentPrice": 100}))
        self.assertEqual(ev.indicator_keys, ())

    def test_first_match_wins_regardless_of_priority(self):
        ev = _evaluator(
            [
                {
                    "priority": 1,
                    "conditions": {"all": [{"fact": "isPriceUp", "operator": "equal", "value": True}]},
                    "event": {"type": "SELL"},
                },
                {
                    "priority": 100,
                    "conditions": {"all": [{"fact": "isPriceUp", "operator": "equal", "value": True}]},
                    "event": {"type": "BUY"},
                },
            ]
        )
        decision = ev.evaluate({"isPriceUp": True})
        self.assertEqual(decision.type, DecisionType.SELL)

    def test_decision_params_are_copied(self):
        ev = _evaluator(
            {
                "conditions": {"all": [{"fact": "isPriceUp", "operator": "equal", "value": True}]},
                "event": {"type": "BUY", "params": {"sizePct": 10}},
            }
        )
        d1 = ev.evaluate({"isPriceUp": True})
        d1.params["sizePct"] = 99
        d2 = ev.evaluate({"isPriceUp": True})
        self.assertEqual(d2.params["sizePct"], 10)

    def test_unknown_fact_is_false(self):
        cond = Comparison("rsi", "lessThan", 30)
        self.assertFalse(evaluate_condition(cond, {}))
        self.assertFalse(evaluate_condition(cond, {"rsi": None}))
        self.assertTrue(evaluate_condition(Not(cond), {}))

    def test_comparisons(self):
        facts = {"currentPrice": 105, "ma:5": 100.0, "hasPosition": False, "openOrders": 0}
        self.assertTrue(evaluate_condition(Comparison("currentPrice", "greaterThan", FactRef("ma:5")), facts))
        self.assertFalse(evaluate_condition(Comparison("currentPrice", "lessThan", 100), facts))
        self.assertTrue(evaluate_condition(Comparison("currentPrice", "equal", 105), facts))
        self.assertTrue(evaluate_condition(Comparison("hasPosition", "equal", False), facts))
        # bool and int never compare equal
        self.assertFalse(evaluate_condition(Comparison("openOrders", "equal", False), facts))
        self.assertFalse(evaluate_condition(Comparison("hasPosition", "lessThan", 1), facts))

    def test_between_is_inclusive_and_not_between_negates(self):
        between = RangeCondition("rsi", "between", 30, 70)
        not_between = RangeCondition("rsi", "notBetween", 30, 70)
        for value in (29.9, 30, 45, 70, 70.1):
            facts = {"rsi": value}
            self.assertEqual(evaluate_condition(between, facts), 30 <= value <= 70)
            self.assertEqual(evaluate_condition(not_between, facts), not evaluate_condition(between, facts))
        self.assertFalse(evaluate_condition(between, {}))
        self.assertFalse(evaluate_condition(not_between, {}))

    def test_groups_short_circuit(self):
        yes = Comparison("currentPrice", "equal", 1)
        no = Comparison("currentPrice", "equal", 2)
        facts = {"currentPrice": 1}
        self.assertTrue(evaluate_condition(AllOf((yes, yes)), facts))
        self.assertFalse(evaluate_condition(AllOf((yes, no)), facts))
        self.assertTrue(evaluate_condition(AnyOf((no, yes)), facts))
        self.assertFalse(evaluate_condition(AnyOf((no, no)), facts))
        self.assertTrue(evaluate_condition(Not(AllOf((yes, no))), facts))

    def test_random_chance_uses_the_drawn_fact(self):
        self.assertTrue(evaluate_condition(RandomChance(30), {"randomChance": 29.99}))
        self.assertFalse(evaluate_condition(RandomChance(30), {"randomChance": 30.0}))
        self.assertFalse(evaluate_condition(RandomChance(0), {"randomChance": 0.0}))
        self.assertFalse(evaluate_condition(RandomChance(50), {}))

    def test_random_chance_extremes_over_many_draws(self):
        rng = random.Random(7)
        never = StrategyEvaluator(
            parse_rule_set(
                {
                    "conditions": {"all": [{"fact": "randomChance", "operator": "randomChance", "randomProbability": 0}]},
                    "event": {"type": "BUY"},
                }
            )
        )
        always = StrategyEvaluator(
            parse_rule_set(
                {
                    "conditions": {"all": [{"fact": "randomChance", "operator": "randomChance", "randomProbability": 100}]},
                    "event": {"type": "BUY"},
                }
            )
        )
        for _ in range(1000):
            facts = {"randomChance": rng.random() * 100}
            self.assertIsNone(never.evaluate(facts))
            self.assertIsNotNone(always.evaluate(facts))

    def test_indicator_keys_are_discovered_once(self):
        ev = _evaluator(
            [
                {
                    "conditions": {"all": [{"fact": "rsi", "operator": "lessThan", "value": 30}]},
                    "event": {"type": "BUY"},
                },
                {
                    "conditions": {
                        "any": [
                            {"fact": "currentPrice", "operator": "greaterThan", "value": "bollingerUpper:20:2"},
                            {"fact": "rsi", "operator": "greaterThan", "value": 70},
                        ]
                    },
                    "event": {"type": "SELL"},
                },
            ]
        )
        self.assertEqual(ev.indicator_keys, ("rsi", "bollingerUpper:20:2"))


if __name__ == "__main__":
    unittest.main()
