# Models package - Import all models for Flask-SQLAlchemy

from models.users import User
from models.loans import Loan, LoanChangeEvent
from models.settings import UserSettings
from models.simulations import Simulation, SimulationLoanSnapshot, SimulationHistoryMetric
from models.monthly_execution_logs import MonthlyExecutionLog

__all__ = [
    'User',
    'Loan',
    'LoanChangeEvent',
    'UserSettings',
    'Simulation',
    'SimulationLoanSnapshot',
    'SimulationHistoryMetric',
    'MonthlyExecutionLog',
]
