"""
Pawnshop Settlement API

Thin FastAPI adapter over the settlement and reversal engines. Handlers are
plain ``def`` so the blocking storage calls run in the threadpool.
"""

from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse

from . import __version__
from .system import PawnshopSystem
from .overdue import assess
from .schemas import (
    MoneyModel, SettleRequest, ReversePaymentBody, PaymentResponse,
    LoanBalanceResponse, SettlementResponse, PaymentListResponse
)
from .errors import (
    PawnshopError, NotFoundError, LoanNotPayableError, PaymentNotReversibleError,
    OverpaymentError, ConcurrencyConflictError, PersistenceError
)
from .config import get_config
from .logging_config import get_logger


logger = get_logger("pawnshop.api")

# Global system instance, built on first use
_system: Optional[PawnshopSystem] = None


def get_system() -> PawnshopSystem:
    global _system
    if _system is None:
        _system = PawnshopSystem()
    return _system


ERROR_STATUS = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (LoanNotPayableError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PaymentNotReversibleError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (OverpaymentError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def _error_body(exc: Exception) -> dict:
    body = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, OverpaymentError):
        body["amount"] = MoneyModel.from_money(exc.amount).model_dump()
        body["total_owed"] = MoneyModel.from_money(exc.total_owed).model_dump()
    return body


async def pawnshop_error_handler(request: Request, exc: PawnshopError) -> JSONResponse:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content=_error_body(exc))


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(exc))


payments_router = APIRouter()
loans_router = APIRouter()


@payments_router.post("", status_code=status.HTTP_201_CREATED, response_model=SettlementResponse)
def settle_payment(request: SettleRequest, system: PawnshopSystem = Depends(get_system)):
    """Apply a payment to a loan"""
    result = system.settlement.settle(request)
    return SettlementResponse(
        payment=PaymentResponse.from_payment(result.payment),
        loan=LoanBalanceResponse.from_loan(result.loan),
        is_fully_paid=result.is_fully_paid,
        remaining_balance=MoneyModel.from_money(result.remaining_balance)
    )


@payments_router.post("/{payment_id}/reverse", response_model=PaymentResponse)
def reverse_payment(payment_id: str, body: ReversePaymentBody,
                    system: PawnshopSystem = Depends(get_system)):
    """Reverse a completed payment"""
    payment = system.reversal.reverse(body.to_request(payment_id))
    return PaymentResponse.from_payment(payment)


@payments_router.get("/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: str, system: PawnshopSystem = Depends(get_system)):
    return PaymentResponse.from_payment(system.settlement.get_payment(payment_id))


@loans_router.get("/{loan_id}/payments", response_model=PaymentListResponse)
def list_loan_payments(loan_id: str, system: PawnshopSystem = Depends(get_system)):
    payments = system.settlement.list_loan_payments(loan_id)
    return PaymentListResponse(
        loan_id=loan_id,
        payments=[PaymentResponse.from_payment(p) for p in payments]
    )


@loans_router.get("/{loan_id}/payoff")
def get_payoff(loan_id: str, system: PawnshopSystem = Depends(get_system)):
    """Amount needed to close the loan today"""
    quote = system.settlement.calculate_payoff(loan_id)
    return {
        "loan_id": loan_id,
        "status": quote.loan.status.value,
        "late_fee": MoneyModel.from_money(quote.late_fee).model_dump(),
        "interest": MoneyModel.from_money(quote.interest).model_dump(),
        "principal": MoneyModel.from_money(quote.principal).model_dump(),
        "payoff_amount": MoneyModel.from_money(quote.total).model_dump()
    }


@loans_router.get("/{loan_id}/minimum-payment")
def get_minimum_payment(loan_id: str, system: PawnshopSystem = Depends(get_system)):
    minimum = system.settlement.calculate_minimum_payment(loan_id)
    return {
        "loan_id": loan_id,
        "minimum_payment": MoneyModel.from_money(minimum).model_dump()
    }


@loans_router.get("/{loan_id}/aging")
def get_loan_aging(loan_id: str, system: PawnshopSystem = Depends(get_system)):
    """Overdue and grace period figures as of now"""
    loan = system.loans.get(loan_id)
    return assess(loan, system.settlement.clock()).to_dict()


def create_app(system: Optional[PawnshopSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Pawnshop Settlement API",
        description="Loan payment settlement and reversal for pawn loans",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_exception_handler(PawnshopError, pawnshop_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])

    if system is not None:
        app.dependency_overrides[get_system] = lambda: system

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "pawnshop_settlement_api",
            "version": __version__
        }

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "pawnshop_core.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
