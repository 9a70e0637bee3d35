from bot_fleet.strategy.evaluator import StrategyEvaluator
from bot_fleet.strategy.parser import RuleSetParseError, parse_rule_set
from bot_fleet.strategy.rules import Rule, RuleEvent, dump_rule_set

__all__ = ["Rule", "RuleEvent", "RuleSetParseError", "StrategyEvaluator", "dump_rule_set", "parse_rule_set"]
