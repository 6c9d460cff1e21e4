from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .gateway import LedgerGateway
from .logging_config import configure_logging
from .models import (
    BankDetails,
    ConfirmBankChangeRequest,
    CreateDepositRequest,
    CreateWealthFundRequest,
    CreateWithdrawalRequest,
    DepositStatus,
    InvestRequest,
    OperationResult,
    RankUpgradeBody,
    ReconcileRequest,
    RegisterAccountRequest,
    RestrictWithdrawalsRequest,
    ReviewRequest,
    SalaryRunRequest,
    SetTransactionPasswordRequest,
    SubmitDepositProofRequest,
    TaskRewardRequest,
    UndoRequest,
    UpdateWealthFundRequest,
    WithdrawalStatus,
)

STATUS_BY_CODE = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "INSUFFICIENT_BALANCE": status.HTTP_400_BAD_REQUEST,
    "INVALID_STATE_TRANSITION": status.HTTP_400_BAD_REQUEST,
    "DUPLICATE_CONFIRMATION": status.HTTP_400_BAD_REQUEST,
    "INVALID_RANK_TARGET": status.HTTP_400_BAD_REQUEST,
    "REFERRAL_CYCLE": status.HTTP_400_BAD_REQUEST,
    "AUTHENTICATION_FAILURE": status.HTTP_401_UNAUTHORIZED,
    "ACCOUNT_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "TRANSACTION_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "IDEMPOTENCY_CONFLICT": status.HTTP_409_CONFLICT,
    "LOCK_TIMEOUT": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _respond(result: OperationResult) -> OperationResult:
    if result.success:
        return result
    code = STATUS_BY_CODE.get(result.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    headers = {"Retry-After": "1"} if result.retryable else None
    raise HTTPException(
        status_code=code,
        detail={"error_code": result.error_code, "message": result.message, "retryable": result.retryable},
        headers=headers,
    )


def create_app(gateway: Optional[LedgerGateway] = None, root_path: str = "") -> FastAPI:
    configure_logging()
    gateway = gateway or LedgerGateway()

    app = FastAPI(
        title="Wallet Ledger API",
        description="Wallet ledger, deposit/withdrawal review, commissions, ranks and salaries",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "wallet-ledger", "config_version": gateway.config.version}

    # Accounts

    @app.post("/accounts", response_model=OperationResult, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
    def register_account(request: RegisterAccountRequest) -> OperationResult:
        return _respond(
            gateway.register_account(request.referrer_id, request.account_id, request.transaction_password)
        )

    @app.get("/accounts/{account_id}", response_model=OperationResult, tags=["Accounts"])
    def get_account(account_id: UUID) -> OperationResult:
        return _respond(gateway.get_account(account_id))

    @app.put("/accounts/{account_id}/transaction-password", response_model=OperationResult, tags=["Accounts"])
    def set_transaction_password(account_id: UUID, request: SetTransactionPasswordRequest) -> OperationResult:
        return _respond(
            gateway.set_transaction_password(account_id, request.new_password, request.current_password)
        )

    @app.put("/accounts/{account_id}/withdrawal-restriction", response_model=OperationResult, tags=["Accounts"])
    def restrict_withdrawals(account_id: UUID, request: RestrictWithdrawalsRequest) -> OperationResult:
        return _respond(gateway.restrict_withdrawals(account_id, request.until))

    @app.get("/accounts/{account_id}/balance", response_model=OperationResult, tags=["Accounts"])
    def get_balance(account_id: UUID) -> OperationResult:
        return _respond(gateway.get_balance(account_id))

    @app.get("/accounts/{account_id}/ledger", response_model=OperationResult, tags=["Accounts"])
    def get_ledger_history(account_id: UUID, limit: int = 50, offset: int = 0) -> OperationResult:
        return _respond(gateway.get_ledger_history(account_id, limit, offset))

    @app.post("/accounts/{account_id}/reconcile", response_model=OperationResult, tags=["Accounts"])
    def reconcile_account(account_id: UUID, request: ReconcileRequest) -> OperationResult:
        return _respond(gateway.reconcile_account(account_id, request.operator_id))

    # Deposits

    @app.post("/deposits", response_model=OperationResult, status_code=status.HTTP_201_CREATED, tags=["Deposits"])
    def create_deposit(request: CreateDepositRequest) -> OperationResult:
        return _respond(gateway.create_deposit(request.account_id, request.amount, request.payment_method))

    @app.get("/deposits", response_model=OperationResult, tags=["Deposits"])
    def list_deposits(
        status_filter: Optional[DepositStatus] = Query(default=None, alias="status"),
        account_id: Optional[UUID] = None,
    ) -> OperationResult:
        return _respond(gateway.list_deposits(status_filter, account_id))

    @app.post("/deposits/{deposit_id}/proof", response_model=OperationResult, tags=["Deposits"])
    def submit_deposit_proof(deposit_id: UUID, request: SubmitDepositProofRequest) -> OperationResult:
        return _respond(gateway.submit_deposit_proof(deposit_id, request.ft_code, request.account_id))

    @app.post("/deposits/{deposit_id}/approve", response_model=OperationResult, tags=["Deposits"])
    def approve_deposit(deposit_id: UUID, request: ReviewRequest) -> OperationResult:
        return _respond(gateway.approve_deposit(deposit_id, request.admin_id, request.notes))

    @app.post("/deposits/{deposit_id}/reject", response_model=OperationResult, tags=["Deposits"])
    def reject_deposit(deposit_id: UUID, request: ReviewRequest) -> OperationResult:
        return _respond(gateway.reject_deposit(deposit_id, request.admin_id, request.notes))

    @app.post("/deposits/{deposit_id}/undo", response_model=OperationResult, tags=["Deposits"])
    def undo_deposit(deposit_id: UUID, request: UndoRequest) -> OperationResult:
        return _respond(gateway.undo_deposit(deposit_id, request.admin_id))

    # Withdrawals

    @app.post(
        "/withdrawals", response_model=OperationResult, status_code=status.HTTP_201_CREATED, tags=["Withdrawals"]
    )
    def create_withdrawal(request: CreateWithdrawalRequest) -> OperationResult:
        return _respond(
            gateway.create_withdrawal(
                request.account_id, request.amount, request.wallet, request.transaction_password
            )
        )

    @app.get("/withdrawals", response_model=OperationResult, tags=["Withdrawals"])
    def list_withdrawals(
        status_filter: Optional[WithdrawalStatus] = Query(default=None, alias="status"),
        account_id: Optional[UUID] = None,
    ) -> OperationResult:
        return _respond(gateway.list_withdrawals(status_filter, account_id))

    @app.post("/withdrawals/{withdrawal_id}/approve", response_model=OperationResult, tags=["Withdrawals"])
    def approve_withdrawal(withdrawal_id: UUID, request: ReviewRequest) -> OperationResult:
        return _respond(gateway.approve_withdrawal(withdrawal_id, request.admin_id, request.notes))

    @app.post("/withdrawals/{withdrawal_id}/reject", response_model=OperationResult, tags=["Withdrawals"])
    def reject_withdrawal(withdrawal_id: UUID, request: ReviewRequest) -> OperationResult:
        return _respond(gateway.reject_withdrawal(withdrawal_id, request.admin_id, request.notes))

    @app.post("/withdrawals/{withdrawal_id}/undo", response_model=OperationResult, tags=["Withdrawals"])
    def undo_withdrawal(withdrawal_id: UUID, request: UndoRequest) -> OperationResult:
        return _respond(gateway.undo_withdrawal(withdrawal_id, request.admin_id))

    # Membership and earnings

    @app.post("/accounts/{account_id}/rank-upgrades", response_model=OperationResult, tags=["Membership"])
    def request_rank_upgrade(account_id: UUID, request: RankUpgradeBody) -> OperationResult:
        return _respond(gateway.request_rank_upgrade(account_id, request.target_level))

    @app.get("/accounts/{account_id}/rank-upgrades", response_model=OperationResult, tags=["Membership"])
    def get_rank_upgrades(account_id: UUID) -> OperationResult:
        return _respond(gateway.get_rank_upgrades(account_id))

    @app.post("/rank-upgrades/{request_id}/commissions", response_model=OperationResult, tags=["Membership"])
    def replay_upgrade_commissions(request_id: UUID) -> OperationResult:
        return _respond(gateway.replay_upgrade_commissions(request_id))

    @app.post("/accounts/{account_id}/task-rewards", response_model=OperationResult, tags=["Membership"])
    def complete_task_reward(account_id: UUID, request: TaskRewardRequest) -> OperationResult:
        return _respond(gateway.complete_task_reward(account_id, request.task_id, request.amount))

    @app.get("/accounts/{account_id}/downline", response_model=OperationResult, tags=["Membership"])
    def get_downline(account_id: UUID) -> OperationResult:
        return _respond(gateway.get_downline(account_id))

    @app.get("/accounts/{account_id}/commissions", response_model=OperationResult, tags=["Membership"])
    def get_commissions(account_id: UUID) -> OperationResult:
        return _respond(gateway.get_commissions(account_id))

    @app.get("/accounts/{account_id}/salary", response_model=OperationResult, tags=["Salary"])
    def get_salary_status(account_id: UUID, period: Optional[str] = None) -> OperationResult:
        return _respond(gateway.get_salary_status(account_id, period))

    @app.post("/salary/runs", response_model=OperationResult, tags=["Salary"])
    def run_salary_period(request: SalaryRunRequest) -> OperationResult:
        return _respond(gateway.run_salary_period(request.period))

    # Bank account

    @app.put("/accounts/{account_id}/bank-account", response_model=OperationResult, tags=["Bank"])
    def set_bank_account(account_id: UUID, details: BankDetails) -> OperationResult:
        return _respond(gateway.set_bank_account(account_id, details))

    @app.post("/accounts/{account_id}/bank-account/confirm", response_model=OperationResult, tags=["Bank"])
    def confirm_bank_change(account_id: UUID, request: ConfirmBankChangeRequest) -> OperationResult:
        return _respond(gateway.confirm_bank_change(account_id, request.confirmed))

    @app.delete("/accounts/{account_id}/bank-account/pending", response_model=OperationResult, tags=["Bank"])
    def cancel_bank_change(account_id: UUID) -> OperationResult:
        return _respond(gateway.cancel_bank_change(account_id))

    # Wealth funds

    @app.post(
        "/wealth/funds", response_model=OperationResult, status_code=status.HTTP_201_CREATED, tags=["Wealth"]
    )
    def create_wealth_fund(request: CreateWealthFundRequest) -> OperationResult:
        return _respond(gateway.create_wealth_fund(**request.model_dump()))

    @app.get("/wealth/funds", response_model=OperationResult, tags=["Wealth"])
    def list_wealth_funds(include_inactive: bool = Query(default=False)) -> OperationResult:
        return _respond(gateway.list_wealth_funds(include_inactive))

    @app.get("/wealth/funds/{fund_id}", response_model=OperationResult, tags=["Wealth"])
    def get_wealth_fund(fund_id: UUID) -> OperationResult:
        return _respond(gateway.get_wealth_fund(fund_id))

    @app.patch("/wealth/funds/{fund_id}", response_model=OperationResult, tags=["Wealth"])
    def update_wealth_fund(fund_id: UUID, request: UpdateWealthFundRequest) -> OperationResult:
        return _respond(gateway.update_wealth_fund(fund_id, **request.model_dump(exclude_none=True)))

    @app.post(
        "/wealth/investments", response_model=OperationResult, status_code=status.HTTP_201_CREATED, tags=["Wealth"]
    )
    def invest(request: InvestRequest) -> OperationResult:
        return _respond(
            gateway.invest(
                request.account_id,
                request.fund_id,
                request.amount,
                request.funding_source,
                request.transaction_password,
                request.request_id,
            )
        )

    @app.get("/wealth/investments", response_model=OperationResult, tags=["Wealth"])
    def list_investments(account_id: Optional[UUID] = Query(default=None)) -> OperationResult:
        return _respond(gateway.list_investments(account_id))

    # Configuration

    @app.get("/config", response_model=OperationResult, tags=["System"])
    def get_config() -> OperationResult:
        return _respond(gateway.get_config())

    @app.patch("/config", response_model=OperationResult, tags=["System"])
    def update_config(changes: dict) -> OperationResult:
        return _respond(gateway.update_config(**changes))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
