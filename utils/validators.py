# utils/validators.py
"""
Structural checks on extracted fields and mapping sets
"""
from collections import Counter
from typing import Dict, List
import logging

logger = logging.getLogger(__name__)


class DataValidator:
    """Validate field collections and mapping sets before they are used or written"""

    @staticmethod
    def validate_field_records(fields: List) -> List[Dict]:
        """
        Flag suspicious rows in an extracted field sheet

        Returns:
            List of validation issues (never raises)
        """
        issues = []

        label_counts = Counter(f.label for f in fields)
        for label, count in label_counts.items():
            if count > 1:
                issues.append({
                    'issue_type': 'duplicate_label',
                    'message': f"Field label '{label}' appears {count} times",
                    'severity': 'warn'
                })

        for f in fields:
            if not any(str(v).strip() for k, v in f.attributes.items() if k != 'color'):
                issues.append({
                    'issue_type': 'label_only',
                    'message': f"Row {f.source} ('{f.label}') has a label but no other attributes",
                    'severity': 'info'
                })

        if issues:
            logger.warning(f"Field sheet validation found {len(issues)} issue(s)")
        return issues

    @staticmethod
    def validate_mapping_records(mappings: List) -> List[Dict]:
        """
        Check the invariants of a mapping set (one mapping per target, non-empty targets)

        Returns:
            List of validation issues; severity 'error' means the set must not be used
        """
        issues = []

        for idx, mapping in enumerate(mappings):
            if not mapping.target_node_id.strip():
                issues.append({
                    'mapping_index': idx,
                    'issue_type': 'empty_target',
                    'message': f"Mapping {mapping.mapping_id} has no target path",
                    'severity': 'error'
                })

        target_counts = Counter(m.target_node_id for m in mappings)
        for target, count in target_counts.items():
            if target and count > 1:
                issues.append({
                    'issue_type': 'duplicate_target',
                    'message': f"Target '{target}' is mapped {count} times",
                    'severity': 'error'
                })

        id_counts = Counter(m.mapping_id for m in mappings)
        for mapping_id, count in id_counts.items():
            if count > 1:
                issues.append({
                    'issue_type': 'duplicate_mapping_id',
                    'message': f"Mapping id '{mapping_id}' is used {count} times",
                    'severity': 'error'
                })

        return issues

    @staticmethod
    def errors_only(issues: List[Dict]) -> List[Dict]:
        return [issue for issue in issues if issue.get('severity') == 'error']
