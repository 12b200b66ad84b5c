"""
Sample invoice workflow with nested customer and product creation.

The invoice resolves one customer (duplicate-checked, created through the
create_customer subflow) and a list of products (created one by one through
the create_product subflow).
"""

import re
from typing import List, Optional

from connectors.entity_store import InMemoryEntityStore
from connectors.registry import EntityStoreRegistry
from engine.executors import CollectFieldStep, CreateEntityStep, ResolveFieldStep, Step, Workflow
from engine.workflow_engine import WorkflowEngine
from models.resolution import ResolutionConfig
from models.workflow_context import WorkflowContext

CUSTOMER_CONFIG = ResolutionConfig(
    model="customer",
    search_fields=["name", "email"],
    interactive=True,
    check_duplicates=True,
    ask_on_duplicate=True,
    subflow="create_customer",
    include_fields=["email"],
    display_fields=["email"],
    friendly_name="customer",
)

PRODUCT_CONFIG = ResolutionConfig(
    model="product",
    search_fields=["name", "sku"],
    identifier_field="name",
    interactive=True,
    subflow="create_product",
    include_fields=["sale_price", "sku"],
    required_item_fields=["price"],
    friendly_name="products",
    multiple=True,
)

SAMPLE_CUSTOMERS = [
    {"id": 1, "name": "John Smith", "email": "john@example.com", "workspace_id": 1},
    {"id": 2, "name": "Acme Corporation", "email": "billing@acme.com", "workspace_id": 1},
    {"id": 3, "name": "Jane Doe", "email": "jane@example.com", "workspace_id": 1},
]

SAMPLE_PRODUCTS = [
    {"id": 1, "name": "MacBook Pro M4", "sku": "MBP-M4", "sale_price": 2499, "workspace_id": 1},
    {"id": 2, "name": "Mouse", "sku": "MSE-001", "sale_price": 25, "workspace_id": 1},
    {"id": 3, "name": "Keyboard", "sku": "KBD-001", "sale_price": 75, "workspace_id": 1},
]


def parse_price(text: str) -> float:
    """Parse "$1,500", "1500" or "19.99 each" into a number."""
    match = re.search(r"\d[\d,]*(?:\.\d+)?", text or "")
    if not match:
        raise ValueError(f"No price in {text!r}")
    value = float(match.group(0).replace(",", ""))
    return int(value) if value.is_integer() else value


def parse_email(text: str) -> str:
    email = (text or "").strip()
    if not re.fullmatch(r"[^@\s]+@[^@\s]+\.[^@\s]+", email):
        raise ValueError(f"Not an email address: {text!r}")
    return email.lower()


class CreateCustomerWorkflow(Workflow):
    workflow_id = "create_customer"
    name = "create_customer"

    @classmethod
    def entity_fields(cls) -> List[str]:
        return ["name", "email", "phone"]

    def build_steps(self) -> List[Step]:
        return [
            CollectFieldStep("name", "name", "What's the customer's name?"),
            CollectFieldStep("email", "email", "What's the customer's email address?", parser=parse_email),
            CollectFieldStep("phone", "phone", "What's their phone number? (reply 'skip' to leave it empty)", required=False),
            CreateEntityStep("save", "customer"),
        ]


class CreateProductWorkflow(Workflow):
    workflow_id = "create_product"
    name = "create_product"
    passthrough_aliases = {"price": "sale_price"}

    @classmethod
    def entity_fields(cls) -> List[str]:
        return ["name", "sale_price", "sku", "description"]

    def build_steps(self) -> List[Step]:
        return [
            CollectFieldStep("name", "name", "What's the product name?"),
            CollectFieldStep("sale_price", "sale_price", "What's the sale price for this product?", parser=parse_price),
            CollectFieldStep("sku", "sku", "What's the SKU? (reply 'skip' to leave it empty)", required=False),
            CreateEntityStep("save", "product"),
        ]


class InvoiceWorkflow(Workflow):
    workflow_id = "invoice"
    name = "invoice"

    def build_steps(self) -> List[Step]:
        return [
            CollectFieldStep("ask_customer", "customer", "Who is this invoice for?"),
            ResolveFieldStep("resolve_customer", "customer_id", CUSTOMER_CONFIG, source="customer", retry_step="ask_customer"),
            CollectFieldStep("ask_items", "items_text", "Which products should go on the invoice? (e.g. '2 laptops at $1500, 1 mouse')"),
            ResolveFieldStep("resolve_items", "items", PRODUCT_CONFIG, source="items_text", retry_step="ask_items"),
            CollectFieldStep("ask_due_date", "due_date", "When is the invoice due?"),
            CreateEntityStep("create_invoice", "invoice", display_field="number"),
        ]

    def completion_message(self, ctx: WorkflowContext) -> str:
        items = ctx.collected_data.get("items") or []
        return (
            f"Invoice #{ctx.collected_data.get('id')} created for customer {ctx.collected_data.get('customer_id')} "
            f"with {len(items)} item(s), due {ctx.collected_data.get('due_date')}."
        )


def build_stores(seed: bool = True) -> EntityStoreRegistry:
    """In-memory stores for customers, products and invoices, optionally seeded."""
    stores = EntityStoreRegistry()
    stores.register("customer", InMemoryEntityStore(
        "customer", ["name", "email", "phone", "workspace_id", "created_by"], SAMPLE_CUSTOMERS if seed else [],
    ))
    stores.register("product", InMemoryEntityStore(
        "product", ["name", "sku", "sale_price", "description", "workspace_id", "created_by"], SAMPLE_PRODUCTS if seed else [],
    ))
    stores.register("invoice", InMemoryEntityStore(
        "invoice", ["customer_id", "items", "due_date", "workspace_id", "created_by"],
    ))
    return stores


def build_engine(stores: Optional[EntityStoreRegistry] = None, llm_service=None, interpreter=None) -> WorkflowEngine:
    """Engine with the invoice workflow and its creation subflows registered."""
    engine = WorkflowEngine(stores or build_stores(), llm_service=llm_service, interpreter=interpreter)
    engine.register_workflow(InvoiceWorkflow())
    engine.register_workflow(CreateCustomerWorkflow())
    engine.register_workflow(CreateProductWorkflow())
    return engine
