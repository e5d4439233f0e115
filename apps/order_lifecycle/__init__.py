"""
Order Lifecycle Service.

Drives a trading instruction through its complete lifecycle at the broker:
1. Check the market clock (optional)
2. Read the latest trade price
3. Submit a market entry order and confirm its fill
4. Derive profit-target and stop-loss levels
5. Place the exit pair
6. Supervise the pair until one leg fills, then cancel the other

Architecture:
    HTTP intake → OrderLifecycleOrchestrator → BrokerGateway → Alpaca API
                                             ↓
                                             SupervisionManager (background OCO tasks)
"""

__version__ = "0.1.0"
