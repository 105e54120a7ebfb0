"""
Stream Definitions
==================
Descriptors for the three synchronized streams.

STREAM        RECORD TYPE  TABLE          CHILDREN
invoices      CustInvc     invoices       invoice_lines, invoice_payments
fulfillments  ItemShip     fulfillments   fulfillment_lines
sales_orders  SalesOrd     sales_orders   sales_order_lines

Fulfillment lines and tracking come from the record detail endpoint on the
query-driven path; bulk files carry them directly.
"""

from typing import Any, Dict, List

from .entities import ChildSpec, EntityDescriptor, FieldSpec, RelatedQuery

LAST_MODIFIED_SQL = """TO_CHAR(T.lastmodifieddate, 'YYYY-MM-DD"T"HH24:MI:SS.FF3TZH:TZM') AS last_modified"""
SINCE_SQL = """TO_TIMESTAMP_TZ('{since_iso}', 'YYYY-MM-DD"T"HH24:MI:SS.FF3"Z"')"""

# Columns the engine never writes; other systems own them
FOREIGN_FIELDS = [
    FieldSpec("created_at", "timestamp"),
    FieldSpec("created_by"),
]


def _so_link_query(id_column: str) -> str:
    return f"""
        SELECT
            PTL.nextdoc AS {id_column},
            PTL.previousdoc AS created_from_so_id,
            S.tranid AS created_from_so_tranid
        FROM PreviousTransactionLink PTL
        JOIN transaction S ON S.id = PTL.previousdoc
        WHERE PTL.nextdoc IN ({{ids}}) AND S.type = 'SalesOrd'
    """


def derive_invoice_balances(row: Dict[str, Any], children: Dict[str, List[Dict[str, Any]]]) -> None:
    """Fill amount_paid / amount_remaining from payments when the source omits them"""
    payments = children.get("invoice_payments", [])
    if row.get("amount_paid") is None:
        row["amount_paid"] = round(sum(p.get("amount") or 0.0 for p in payments), 2)
    if row.get("amount_remaining") is None and row.get("total") is not None:
        row["amount_remaining"] = round(max(0.0, row["total"] - row["amount_paid"]), 2)


# ============== Invoices ==============

INVOICE_LINE_FIELDS = [
    FieldSpec("line_no", "integer", aliases=("linesequencenumber", "lineno")),
    FieldSpec("item_id", "integer"),
    FieldSpec("item_sku", aliases=("sku",)),
    FieldSpec("item_display_name", aliases=("displayname",)),
    FieldSpec("quantity", "number"),
    FieldSpec("rate", "number"),
    FieldSpec("amount", "number"),
    FieldSpec("description"),
    FieldSpec("comment", aliases=("line_comment",)),
]

INVOICES = EntityDescriptor(
    stream="invoices",
    table="invoices",
    id_column="invoice_id",
    record_type="CustInvc",
    fields=[
        FieldSpec("invoice_id", "integer"),
        FieldSpec("tran_id", aliases=("tranid",)),
        FieldSpec("trandate", "date"),
        FieldSpec("total", "number"),
        FieldSpec("tax_total", "number", aliases=("taxtotal",)),
        FieldSpec("amount_paid", "number"),
        FieldSpec("amount_remaining", "number"),
        FieldSpec("customer_id", "integer"),
        FieldSpec("created_from_so_id", "integer"),
        FieldSpec("created_from_so_tranid"),
        FieldSpec("sales_rep"),
        FieldSpec("ship_address"),
        FieldSpec("so_reference"),
        FieldSpec("giveaway", "bool", aliases=("custbody_hpl_giveaway",)),
        FieldSpec("warranty", "bool", aliases=("custbody_hpl_warranty",)),
        FieldSpec("netsuite_url"),
        FieldSpec("last_modified", "timestamp"),
    ],
    foreign_fields=FOREIGN_FIELDS + [FieldSpec("payment_processing", "bool")],
    header_query=f"""
        SELECT
            T.id AS invoice_id,
            T.tranid AS tran_id,
            TO_CHAR(T.trandate, 'YYYY-MM-DD') AS trandate,
            T.total AS total,
            T.taxtotal AS tax_total,
            T.entity AS customer_id,
            BUILTIN.DF(T.employee) AS sales_rep,
            T.shipaddress AS ship_address,
            T.otherrefnum AS so_reference,
            T.custbody_hpl_giveaway AS giveaway,
            T.custbody_hpl_warranty AS warranty,
            {LAST_MODIFIED_SQL}
        FROM transaction T
        WHERE T.type = 'CustInvc' AND T.id IN ({{ids}})
    """,
    link_queries=[_so_link_query("invoice_id")],
    children=[
        ChildSpec(
            table="invoice_lines",
            key="line_no",
            fields=INVOICE_LINE_FIELDS,
            dataset="invoice_lines",
            amount_column="amount",
            query="""
                SELECT
                    TL.transaction AS invoice_id,
                    TL.linesequencenumber AS line_no,
                    I.id AS item_id,
                    I.itemid AS item_sku,
                    I.displayname AS item_display_name,
                    NVL(ABS(TL.quantity), 0) AS quantity,
                    TL.rate AS rate,
                    NVL(ABS(TL.amount), 0) AS amount,
                    TL.memo AS description,
                    TL.custcolns_comment AS line_comment
                FROM transactionline TL
                JOIN item I ON I.id = TL.item
                WHERE TL.transaction IN ({ids})
            """,
        ),
        ChildSpec(
            table="invoice_payments",
            key="payment_id",
            fields=[
                FieldSpec("payment_id", "integer"),
                FieldSpec("tran_id", aliases=("tranid",)),
                FieldSpec("payment_date", "date"),
                FieldSpec("amount", "number"),
                FieldSpec("status"),
                FieldSpec("payment_option"),
            ],
            dataset="invoice_payments",
            query="""
                SELECT
                    TL.createdfrom AS invoice_id,
                    P.id AS payment_id,
                    P.tranid AS tran_id,
                    TO_CHAR(P.trandate, 'YYYY-MM-DD') AS payment_date,
                    BUILTIN.DF(P.status) AS status,
                    P.total AS amount,
                    BUILTIN.DF(P.paymentoption) AS payment_option
                FROM transaction P
                JOIN transactionline TL ON TL.transaction = P.id
                WHERE P.type = 'CustPymt' AND TL.createdfrom IN ({ids})
            """,
        ),
    ],
    related_queries=[
        RelatedQuery(
            name="payments",
            entity_column="P.entity",
            template=f"""
                SELECT DISTINCT TL.createdfrom AS id
                FROM transaction P
                JOIN transactionline TL ON TL.transaction = P.id
                WHERE P.type = 'CustPymt'
                  AND TL.createdfrom IS NOT NULL
                  AND P.lastmodifieddate >= {SINCE_SQL}
                  {{scope_filter}}
            """,
        ),
    ],
    manifest_name="manifest_latest.json",
    header_dataset="invoices",
    ui_path="/app/accounting/transactions/custinvc.nl?id={id}",
    derive=derive_invoice_balances,
    notify_unpaid=True,
    totals_check=True,
)


# ============== Fulfillments ==============

FULFILLMENTS = EntityDescriptor(
    stream="fulfillments",
    table="fulfillments",
    id_column="fulfillment_id",
    record_type="ItemShip",
    fields=[
        FieldSpec("fulfillment_id", "integer"),
        FieldSpec("tran_id", aliases=("tranid",)),
        FieldSpec("trandate", "date"),
        FieldSpec("customer_id", "integer"),
        FieldSpec("status"),
        FieldSpec("ship_status"),
        FieldSpec("created_from_so_id", "integer"),
        FieldSpec("created_from_so_tranid"),
        FieldSpec("tracking"),
        FieldSpec("tracking_urls", "json"),
        FieldSpec("tracking_details", "json"),
        FieldSpec("netsuite_url"),
        FieldSpec("last_modified", "timestamp"),
    ],
    foreign_fields=list(FOREIGN_FIELDS),
    header_query=f"""
        SELECT
            T.id AS fulfillment_id,
            T.tranid AS tran_id,
            TO_CHAR(T.trandate, 'YYYY-MM-DD') AS trandate,
            T.entity AS customer_id,
            BUILTIN.DF(T.status) AS status,
            {LAST_MODIFIED_SQL}
        FROM transaction T
        WHERE T.type = 'ItemShip' AND T.id IN ({{ids}})
    """,
    link_queries=[_so_link_query("fulfillment_id")],
    children=[
        ChildSpec(
            table="fulfillment_lines",
            key="line_no",
            fields=[
                FieldSpec("line_no", "integer"),
                FieldSpec("line_id", "integer"),
                FieldSpec("item_id", "integer"),
                FieldSpec("item_sku"),
                FieldSpec("item_display_name"),
                FieldSpec("quantity", "number"),
                FieldSpec("serial_numbers", "json"),
                FieldSpec("comments", "json"),
            ],
            dataset="fulfillment_lines",
        ),
    ],
    related_queries=[
        RelatedQuery(
            name="sales_orders",
            entity_column="F.entity",
            template=f"""
                SELECT DISTINCT PTL.nextdoc AS id
                FROM PreviousTransactionLink PTL
                JOIN transaction S ON S.id = PTL.previousdoc
                JOIN transaction F ON F.id = PTL.nextdoc
                WHERE S.type = 'SalesOrd'
                  AND F.type = 'ItemShip'
                  AND S.lastmodifieddate >= {SINCE_SQL}
                  {{scope_filter}}
            """,
        ),
    ],
    manifest_name="manifest_fulfillments_latest.json",
    header_dataset="fulfillments",
    ui_path="/app/accounting/transactions/itemship.nl?id={id}",
    detail_record="itemFulfillment",
    enriched_fields=["ship_status", "tracking", "tracking_urls", "tracking_details"],
)


# ============== Sales Orders ==============

SALES_ORDERS = EntityDescriptor(
    stream="sales_orders",
    table="sales_orders",
    id_column="so_id",
    record_type="SalesOrd",
    fields=[
        FieldSpec("so_id", "integer"),
        FieldSpec("tran_id", aliases=("tranid",)),
        FieldSpec("trandate", "date"),
        FieldSpec("status"),
        FieldSpec("total", "number"),
        FieldSpec("tax_total", "number", aliases=("taxtotal",)),
        FieldSpec("customer_id", "integer"),
        FieldSpec("sales_rep"),
        FieldSpec("ship_address"),
        FieldSpec("so_reference"),
        FieldSpec("ship_complete", "bool"),
        FieldSpec("giveaway", "bool", aliases=("custbody_hpl_giveaway",)),
        FieldSpec("warranty", "bool", aliases=("custbody_hpl_warranty",)),
        FieldSpec("hubspot_so_id", queried=False),
        FieldSpec("sales_channel_id", queried=False),
        FieldSpec("affiliate_id", queried=False),
        FieldSpec("order_note", queried=False),
        FieldSpec("billing_terms_id", queried=False),
        FieldSpec("sales_team", "json", queried=False),
        FieldSpec("partners", "json", queried=False),
        FieldSpec("netsuite_url"),
        FieldSpec("last_modified", "timestamp"),
    ],
    foreign_fields=FOREIGN_FIELDS + [FieldSpec("processing_state")],
    required_columns=["customer_id"],
    header_query=f"""
        SELECT
            T.id AS so_id,
            T.tranid AS tran_id,
            TO_CHAR(T.trandate, 'YYYY-MM-DD') AS trandate,
            BUILTIN.DF(T.status) AS status,
            T.total AS total,
            T.taxtotal AS tax_total,
            T.entity AS customer_id,
            BUILTIN.DF(T.employee) AS sales_rep,
            T.shipaddress AS ship_address,
            T.otherrefnum AS so_reference,
            T.shipcomplete AS ship_complete,
            T.custbody_hpl_giveaway AS giveaway,
            T.custbody_hpl_warranty AS warranty,
            {LAST_MODIFIED_SQL}
        FROM transaction T
        WHERE T.type = 'SalesOrd' AND T.id IN ({{ids}})
    """,
    children=[
        ChildSpec(
            table="sales_order_lines",
            key="line_no",
            fields=[
                FieldSpec("line_no", "integer", aliases=("linesequencenumber",)),
                FieldSpec("item_id", "integer"),
                FieldSpec("item_sku", aliases=("sku",)),
                FieldSpec("item_display_name", aliases=("displayname",)),
                FieldSpec("quantity", "number"),
                FieldSpec("rate", "number"),
                FieldSpec("amount", "number"),
                FieldSpec("description"),
                FieldSpec("comment", aliases=("line_comment",)),
                FieldSpec("is_closed", "bool"),
                FieldSpec("fulfillment_status"),
                FieldSpec("ns_line_id", "integer"),
            ],
            dataset="sales_order_lines",
            amount_column="amount",
            query="""
                SELECT
                    TL.transaction AS so_id,
                    TL.linesequencenumber AS line_no,
                    I.id AS item_id,
                    I.itemid AS item_sku,
                    I.displayname AS item_display_name,
                    NVL(ABS(TL.quantity), 0) AS quantity,
                    TL.rate AS rate,
                    NVL(ABS(TL.amount), 0) AS amount,
                    TL.memo AS description,
                    TL.custcolns_comment AS line_comment,
                    TL.isclosed AS is_closed,
                    CASE
                        WHEN NVL(TL.quantityshiprecv, 0) >= ABS(TL.quantity) THEN 'Fulfilled'
                        WHEN NVL(TL.quantityshiprecv, 0) > 0 THEN 'Partially Fulfilled'
                        ELSE 'Pending Fulfillment'
                    END AS fulfillment_status,
                    TL.id AS ns_line_id
                FROM transactionline TL
                JOIN item I ON I.id = TL.item
                WHERE TL.transaction IN ({ids})
            """,
        ),
    ],
    related_queries=[
        RelatedQuery(
            name="fulfillments",
            entity_column="S.entity",
            template=f"""
                SELECT DISTINCT PTL.previousdoc AS id
                FROM PreviousTransactionLink PTL
                JOIN transaction F ON F.id = PTL.nextdoc
                JOIN transaction S ON S.id = PTL.previousdoc
                WHERE F.type = 'ItemShip'
                  AND S.type = 'SalesOrd'
                  AND F.lastmodifieddate >= {SINCE_SQL}
                  {{scope_filter}}
            """,
        ),
    ],
    manifest_name="sales_orders_manifest_latest.json",
    header_dataset="sales_orders",
    ui_path="/app/accounting/transactions/salesord.nl?id={id}",
)


STREAMS: Dict[str, EntityDescriptor] = {
    descriptor.stream: descriptor
    for descriptor in (INVOICES, FULFILLMENTS, SALES_ORDERS)
}
