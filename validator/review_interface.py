# validator/review_interface.py
import streamlit as st

from extractors.schema_normalizer import display_path
from mapper.binder import BindingReport


class MappingReviewer:
    def create_review_ui(self, report: BindingReport, key_prefix: str = 'review') -> dict:
        """
        Streamlit list of binding anomalies so each one can be resolved by hand

        Returns:
            Dict with the mapping ids the user asked to remove and whether the
            re-attached mappings should be accepted
        """
        actions = {'remove': [], 'accept_relinks': False}
        if not report.has_anomalies and not report.relinked:
            st.success("✅ Every mapping is attached to its node")
            return actions

        st.subheader("🔍 Mapping Review")

        for idx, item in enumerate(report.ambiguous):
            mapping = item.mapping
            with st.expander(f"⚠️ Ambiguous: {mapping.field.label} → {display_path(mapping.target_node_id)}"):
                st.write(f"**Reason:** {item.reason}")
                st.write("**Candidates:**")
                for candidate in item.candidates:
                    st.code(display_path(candidate))
                if st.button("Remove mapping", key=f"{key_prefix}_amb_{idx}"):
                    actions['remove'].append(mapping.mapping_id)

        for idx, item in enumerate(report.orphaned):
            mapping = item.mapping
            with st.expander(f"❌ Orphaned: {mapping.field.label} → {display_path(mapping.target_node_id)}"):
                st.write(f"**Target type:** {mapping.target_type or '(unknown)'}")
                if mapping.mapping_details:
                    st.text_area("Mapping details", mapping.mapping_details, disabled=True,
                                 key=f"{key_prefix}_orph_details_{idx}")
                if st.button("Remove mapping", key=f"{key_prefix}_orph_{idx}"):
                    actions['remove'].append(mapping.mapping_id)

        if report.relinked:
            with st.expander(f"🔗 Re-attached after schema change ({len(report.relinked)})"):
                for relink in report.relinked:
                    st.write(f"{display_path(relink.old_target_id)} → {display_path(relink.new_target_id)}")
                actions['accept_relinks'] = st.button("Keep new paths", key=f"{key_prefix}_relink")

        return actions
