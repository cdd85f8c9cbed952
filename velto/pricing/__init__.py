from velto.pricing.simulator import PricingSimulator, SimulatedFill, SlippageQuote

__all__ = ["PricingSimulator", "SimulatedFill", "SlippageQuote"]
