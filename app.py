"""
Field Mapper - Streamlit UI
Map supplier spreadsheet fields onto the leaves of a JSON Schema tree
"""
import streamlit as st
import pandas as pd
from datetime import datetime

from extractors.field_extractor import write_field_template
from extractors.schema_normalizer import display_path, leaf_nodes
from loaders.workbook_codec import export_workbook
from main import MappingSession
from mapper.schemas import ClearMappingsRequest, DropEvent, OutputDescriptor, SaveMappingRequest
from utils.config import load_settings
from utils.errors import CodecError
from utils.logging_config import setup_logging
from validator.review_interface import MappingReviewer

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
OBLIGATION_ICONS = {'required': '🔴', 'conditional': '🟠', 'optional': '⚪'}

# Page configuration
st.set_page_config(
    page_title="Field Mapper",
    page_icon="🌳",
    layout="wide",
    initial_sidebar_state="expanded"
)

# Initialize session state
if 'session' not in st.session_state:
    settings = load_settings()
    setup_logging(log_level=settings.log_level, log_file=settings.log_file or None,
                  module_levels=settings.log_module_levels)
    st.session_state.session = MappingSession(settings)

session: MappingSession = st.session_state.session

st.title("🌳 Schema Field Mapper")
st.markdown("---")

# Sidebar - schema and files
with st.sidebar:
    st.header("⚙️ Schema")

    schemas = session.schema_manager.list_schemas()
    if schemas:
        keys = list(schemas.keys())
        current = keys.index(session.schema_key) if session.schema_key in keys else 0
        selected = st.selectbox("Select schema:", keys, index=current, format_func=lambda k: schemas[k])
        if selected != st.session_state.get('selected_schema'):
            st.session_state.selected_schema = selected
            session.select_schema(selected)
    else:
        st.warning(f"No schemas found in {session.settings.schema_dir}/")

    if st.button("🔄 Reload schema files"):
        session.schema_manager.refresh_schema()
        if session.schema_key:
            session.select_schema(session.schema_key)

    st.markdown("---")
    st.subheader("📋 Supplier Fields")

    st.download_button(
        label="📥 Download field template",
        data=write_field_template(),
        file_name="field_template.xlsx",
        mime=XLSX_MIME,
        use_container_width=True
    )

    field_sheet = st.file_uploader("Upload field sheet", type=['xlsx', 'xls', 'csv'], key='field_sheet')
    if field_sheet is not None and st.session_state.get('field_sheet_name') != field_sheet.name:
        st.session_state.field_sheet_name = field_sheet.name
        session.upload_fields(field_sheet)

    st.metric("Fields", len(session.catalog))
    st.metric("Mappings", len(session.store))

    st.markdown("---")
    st.subheader("💾 Mapping Workbook")

    workbook = None
    if session.schema_key:
        try:
            workbook = export_workbook(session.schema_key, session.store.records(),
                                       sheet_name=session.settings.data_sheet_name)
        except CodecError as e:
            st.error(f"❌ Mappings cannot be exported: {e}")
    if workbook is not None:
        st.download_button(
            label="📥 Download mappings",
            data=workbook,
            file_name=f"mappings_{session.schema_key}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.xlsx",
            mime=XLSX_MIME,
            use_container_width=True
        )

    mapping_file = st.file_uploader("Import mappings", type=['xlsx'], key='mapping_file')
    if mapping_file is not None and st.session_state.get('mapping_file_name') != mapping_file.name:
        st.session_state.mapping_file_name = mapping_file.name
        session.import_mappings(mapping_file)
        st.session_state.selected_schema = session.schema_key
        st.rerun()

    if st.button("🗑️ Clear all mappings", disabled=len(session.store) == 0):
        session.clear_mappings(ClearMappingsRequest(reason="cleared from sidebar"))
        st.rerun()

# Notifications
for notification in session.notifications[-8:]:
    if notification.severity == 'error':
        st.error(f"❌ {notification.message}")
    elif notification.severity == 'warn':
        st.warning(notification.message)
    elif notification.severity == 'ok':
        st.success(f"✅ {notification.message}")
    else:
        st.info(notification.message)
if session.notifications and st.button("Dismiss messages"):
    session.dismiss_notifications()
    st.rerun()

if session.bound is None:
    st.info("Select a schema to start mapping")
    st.stop()

col1, col2 = st.columns([3, 2])

with col1:
    st.subheader("🗂️ Schema Tree")
    rows = []
    stack = [(session.bound.tree, 0)]
    while stack:
        node, depth = stack.pop()
        rows.append({
            'Node': f"{'    ' * depth}{OBLIGATION_ICONS[node.obligation]} {node.name}",
            'Type': node.type,
            'Rules': '; '.join(node.rules),
            'Sample': node.value_preview or '',
            'Mapped': f"✅ {node.mapping.field.label}" if node.mapped else '',
        })
        stack.extend((child, depth + 1) for child in reversed(node.children))
    st.dataframe(pd.DataFrame(rows), use_container_width=True, height=520, hide_index=True)

with col2:
    st.subheader("🔗 Map a Field")
    fields = session.catalog.fields()
    leaves = leaf_nodes(session.tree)

    if not fields:
        st.info("Upload a field sheet to create mappings")
    else:
        field_id = st.selectbox("Supplier field:", [f.field_id for f in fields],
                                format_func=lambda fid: session.catalog.get(fid).label)
        target_id = st.selectbox("Target leaf:", [n.id for n in leaves], format_func=display_path)

        check = session.handle_drop(DropEvent(field_id=field_id, target_node_id=target_id))
        if not check.accepted:
            st.error(check.message)
        else:
            if check.message:
                st.warning(check.message)
            with st.form("mapping_form"):
                details = st.text_area(
                    "Mapping details",
                    value=check.existing.mapping_details if check.existing else '',
                    help="How the supplier value is parsed into the target"
                )
                outputs_text = st.text_area(
                    "Outputs (one per line: label = expression)",
                    help="Optional output transforms"
                )
                overwrite = st.checkbox("Replace the existing mapping", value=False,
                                        disabled=not check.needs_confirmation)
                if st.form_submit_button("💾 Save mapping", type="primary"):
                    outputs = []
                    for line in outputs_text.splitlines():
                        if not line.strip():
                            continue
                        label, _, expression = line.partition('=')
                        outputs.append(OutputDescriptor(label=label.strip(), expression=expression.strip()))
                    session.save_mapping(SaveMappingRequest(
                        field_id=field_id,
                        target_node_id=target_id,
                        mapping_details=details,
                        outputs=outputs,
                        overwrite=overwrite
                    ))
                    st.rerun()

st.markdown("---")

actions = MappingReviewer().create_review_ui(session.bound.report)
for mapping_id in actions['remove']:
    session.remove_mapping(mapping_id)
if actions['accept_relinks']:
    session.accept_relinks()
if actions['remove'] or actions['accept_relinks']:
    st.rerun()

with st.expander("📊 Current Mappings"):
    mappings_df = pd.DataFrame([{
        'Target': display_path(m.target_node_id),
        'Field': m.field.label,
        'Details': m.mapping_details,
        'Outputs': ', '.join(o.label for o in m.outputs),
        'Updated': m.timestamp.strftime('%Y-%m-%d %H:%M'),
    } for m in session.store.records()])
    if mappings_df.empty:
        st.write("No mappings yet")
    else:
        st.dataframe(mappings_df, use_container_width=True)

with st.expander("🔎 Fields of all schemas"):
    query = st.text_input("Search fields", key='field_index_query')
    index_df = pd.DataFrame([{
        'Schema': f.schema_title,
        'Path': f.path,
        'Type': f.type,
        'Obligation': f.obligation,
        'Rules': '; '.join(f.rules),
    } for f in session.schema_manager.list_fields(query=query)])
    if index_df.empty:
        st.write("No matching fields")
    else:
        st.dataframe(index_df, use_container_width=True, hide_index=True)
