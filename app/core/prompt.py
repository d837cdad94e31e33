"""CRM schema catalog and the system prompts for both chat passes"""
from dataclasses import dataclass
from typing import List, Tuple


@dataclass(frozen=True)
class RelationDoc:
    name: str
    purpose: str
    columns: Tuple[Tuple[str, str], ...]


BASE_TABLES: List[RelationDoc] = [
    RelationDoc(
        name="leads",
        purpose="Every lead/deal in the CRM",
        columns=(
            ("id", "Primary key"),
            ("lead_name", "Company or lead name"),
            ("email", "Lead email"),
            ("phone", "Lead phone"),
            ("source", "Original lead source (e.g., website, referral)"),
            ("lead_source", "Detailed lead source channel"),
            ("lead_score", "Numeric score (higher = more qualified)"),
            ("status", "Funnel stage (New, Contacted, Qualified, Negotiation, Won, Lost)"),
            ("deal_value", "Monetary value of the deal"),
            ("probability", "Win probability (0-100)"),
            ("sales_person_id", "FK -> sales_person.id"),
            ("contact_name", "Name of the contact person"),
            ("contact_designation", "Contact's job title"),
            ("priority", "Lead priority level"),
            ("is_hot", "Boolean hot lead flag"),
            ("expected_close_date", "When the deal is expected to close"),
            ("last_contacted_at", "Timestamp of last contact"),
            ("last_contact_date", "Date of last contact"),
            ("status_updated_at", "When the status last changed"),
            ("lost_reason", "Reason for losing the deal (if status = Lost)"),
            ("created_at", "Lead creation timestamp"),
        ),
    ),
    RelationDoc(
        name="sales_person",
        purpose="Sales team members",
        columns=(
            ("id", "Primary key"),
            ("name", "Full name"),
            ("email", "Email address"),
            ("region", "Sales region/territory"),
            ("experience_level", "Seniority level"),
            ("monthly_target", "Revenue target per month"),
            ("is_active", "Boolean, currently active"),
            ("joined_at", "Date joined the team"),
            ("created_at", "Record creation timestamp"),
        ),
    ),
    RelationDoc(
        name="lead_activity",
        purpose="All activities logged against leads",
        columns=(
            ("id", "Primary key"),
            ("lead_id", "FK -> leads.id"),
            ("sales_person_id", "FK -> sales_person.id"),
            ("activity_type", "Type (Call, Email, Meeting, Follow-up)"),
            ("activity_outcome", "Result (Interested, No Answer, Callback)"),
            ("duration_minutes", "Length of the activity"),
            ("notes", "Free-text notes"),
            ("created_at", "Activity timestamp"),
        ),
    ),
]


def _view(name: str, purpose: str, *columns: str) -> RelationDoc:
    return RelationDoc(name=name, purpose=purpose, columns=tuple((c, "") for c in columns))


VIEW_GROUPS: List[Tuple[str, List[RelationDoc]]] = [
    (
        "KPI / Summary Views",
        [
            _view("vw_total_leads", "Total number of leads", "total_leads"),
            _view("vw_leads_count", "Total number of leads", "total_leads"),
            _view("vw_active_leads", "Leads not Won/Lost", "active_leads"),
            _view("vw_deals_won", "Won deals", "deals_won"),
            _view("vw_conversion_rate", "Won / total leads", "conversion_rate"),
            _view("vw_avg_lead_score", "Average lead score", "avg_lead_score"),
            _view("vw_pipeline_value", "Open deal value", "pipeline_value"),
            _view("vw_pipeline_value_total", "Open deal value", "pipeline_value"),
            _view("vw_weighted_pipeline_value", "Deal value x probability", "weighted_pipeline_value"),
            _view("vw_expected_revenue", "Expected revenue", "expected_revenue"),
            _view("vw_hot_leads_pipeline_value", "Pipeline value of hot leads", "hot_pipeline_value"),
            _view("vw_high_score_leads", "Leads with a high score", "high_score_leads"),
            _view("vw_inactive_leads_7d", "Leads untouched for 7 days", "inactive_leads"),
            _view("vw_inactive_hot_leads_3d", "Hot leads untouched for 3 days", "inactive_hot_leads"),
            _view("vw_overdue_expected_close", "Open leads past expected close", "overdue_leads"),
        ],
    ),
    (
        "Analytical Views",
        [
            _view("vw_leads_by_status", "Lead count per status", "status", "total_leads"),
            _view("vw_leads_by_source", "Lead count per source", "source", "total_leads"),
            _view("vw_leads_hot_vs_cold", "Hot vs cold split", "category", "lead_count"),
            _view(
                "vw_leads_by_probability_bucket", "Leads per win-probability bucket",
                "probability_bucket", "lead_count",
            ),
            _view("vw_lead_funnel", "Funnel by status", "status", "total"),
            _view(
                "vw_lead_source_performance", "Conversion per source",
                "source", "leads", "wins", "conversion_rate",
            ),
            _view("vw_daily_leads", "Leads per day", "lead_date", "total_leads"),
            _view("vw_leads_created_daily", "Leads created per day", "day", "leads_created"),
            _view("vw_monthly_revenue", "Won revenue per month", "month", "revenue"),
            _view(
                "vw_pipeline_by_expected_close_month", "Pipeline per expected close month",
                "close_month", "pipeline_value",
            ),
            _view(
                "vw_lead_engagement", "Activity per lead",
                "lead_id", "lead_name", "activity_count", "last_activity",
            ),
            _view(
                "vw_activity_effectiveness", "Outcomes per activity type",
                "activity_type", "total_activities", "positive_outcomes",
            ),
        ],
    ),
    (
        "Sales Person Views",
        [
            _view(
                "vw_leads_per_salesperson", "Lead count per rep",
                "sales_person_id", "sales_person_name", "lead_count",
            ),
            _view(
                "vw_sales_person_performance", "Rep scorecard",
                "id", "name", "region", "monthly_target", "total_leads", "deals_won", "revenue",
            ),
            _view(
                "vw_pipeline_by_salesperson", "Pipeline per rep",
                "sales_person_id", "sales_person_name", "pipeline_value",
            ),
            _view(
                "vw_salesperson_target_vs_pipeline", "Target vs pipeline per rep",
                "id", "name", "monthly_target", "pipeline_value",
            ),
            _view("vw_top_salespersons_by_pipeline", "Reps ranked by pipeline", "name", "pipeline_value"),
        ],
    ),
]


def relation_names() -> List[str]:
    names = [t.name for t in BASE_TABLES]
    for _, views in VIEW_GROUPS:
        names.extend(v.name for v in views)
    return names


def render_schema() -> str:
    """Schema description embedded in the SQL generation prompt"""
    lines = ["=== CORE TABLES ===", ""]
    for table in BASE_TABLES:
        lines.append(f"{table.name} - {table.purpose}")
        lines.extend(f"- {col}: {desc}" for col, desc in table.columns)
        lines.append("")

    lines.append("=== PRE-BUILT VIEWS (use these first) ===")
    for title, views in VIEW_GROUPS:
        lines.append("")
        lines.append(f"{title}:")
        for view in views:
            cols = ", ".join(col for col, _ in view.columns)
            lines.append(f"- {view.name} ({cols}): {view.purpose}")
    return "\n".join(lines).strip()


DATABASE_SCHEMA = render_schema()


SQL_GENERATION_PROMPT = f"""You are the SQL engine of a Sales CRM assistant. You write PostgreSQL queries against the CRM database below.

DATABASE SCHEMA:
{DATABASE_SCHEMA}

QUERY GENERATION RULES:
1. Generate ONLY a single PostgreSQL SELECT query (a WITH ... SELECT CTE is allowed).
2. Return the SQL inside a markdown code block: ```sql <your query> ```
3. Do NOT wrap the answer in <content> tags, UI components or JSON. Plain text + SQL only.
4. Prefer views (vw_*) first. Only write custom JOINs/aggregations when no view fits the question.
5. NEVER generate INSERT, UPDATE, DELETE, DROP, ALTER, CREATE, TRUNCATE, GRANT, REVOKE, COPY or any DDL/DML.
6. Always alias columns with readable names using AS.
7. Use ORDER BY when the result benefits from sorting.
8. LIMIT results to 100 rows maximum unless the user requests a specific count.
9. Use COALESCE for nullable numeric fields to avoid NULLs in output.
10. Keep monetary values numeric; the presentation layer formats them.
11. For date filtering use literal comparisons (e.g., created_at >= '2025-01-01').

FORECASTING QUESTIONS:
When the user asks for predictions or projections, query the HISTORICAL data the forecast needs:
- Revenue: vw_monthly_revenue, or aggregate won deals.
- Pipeline: vw_pipeline_by_expected_close_month.
- Lead volume: vw_daily_leads or vw_leads_created_daily.
"""


ANSWER_SYSTEM_PROMPT = """You are an AI-powered Sales CRM analyst. You receive real data from the CRM's PostgreSQL database and turn it into actionable insight.

IDENTITY & TONE:
- A sharp, reliable sales ops analyst; a senior RevOps partner to the user.
- Professional but warm, concise, insight-first. Address users as teammates.

SCOPE:
- Leads, pipeline, revenue, rep performance, activities and forecasting.
- Politely decline questions outside sales/CRM and steer back to pipeline, leads, reps or revenue.
- You are read-only. Changes to CRM records happen in the CRM itself.

DATA RULES:
1. Never fabricate numbers. Use only the query results provided with the question.
2. If no rows came back, say so plainly: "No results found for that criteria."
3. If the query failed, do not show raw error text. Answer conversationally or ask the user to rephrase.
4. Lead with the insight in 1-2 sentences, then the detail.
5. Round currency for readability ("$1.2M", not "$1,234,567.89").

FORMATTING:
- Use tables for multi-column detail, bullet lists for short rankings, a single bold figure for one KPI.
- For trends over time, describe the direction and the notable points.

FORECASTING:
- Separate facts from predictions and state a confidence level (high / moderate / directional).
- Give ranges, not single numbers, and suggest the action that moves the outcome.
"""
