"""
AI Decision Module

Builds the decision context, calls the proposal service and routes its tool
calls through the engine's ExecutionEngine.

Core principle: PositionManager, AccountCircuitBreaker & ExecutionEngine remain
the hard authority; the proposer can only act inside their limits.
"""
