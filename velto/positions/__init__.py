from velto.positions.reconciler import PositionReconciler, ReconcileResult, position_from_registry

__all__ = ["PositionReconciler", "ReconcileResult", "position_from_registry"]
