"""XML namespaces, relationship types and content types used in .xlsx packages."""

NS_MAIN = "http://schemas.openxmlformats.org/spreadsheetml/2006/main"
NS_R = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
NS_PKG_REL = "http://schemas.openxmlformats.org/package/2006/relationships"
NS_CT = "http://schemas.openxmlformats.org/package/2006/content-types"
NS_MC = "http://schemas.openxmlformats.org/markup-compatibility/2006"
NS_X14AC = "http://schemas.microsoft.com/office/spreadsheetml/2009/9/ac"

NS_XDR = "http://schemas.openxmlformats.org/drawingml/2006/spreadsheetDrawing"
NS_A = "http://schemas.openxmlformats.org/drawingml/2006/main"
NS_C = "http://schemas.openxmlformats.org/drawingml/2006/chart"

NS_CP = "http://schemas.openxmlformats.org/package/2006/metadata/core-properties"
NS_DC = "http://purl.org/dc/elements/1.1/"
NS_DCTERMS = "http://purl.org/dc/terms/"
NS_DCMITYPE = "http://purl.org/dc/dcmitype/"
NS_XSI = "http://www.w3.org/2001/XMLSchema-instance"
NS_EXTENDED = "http://schemas.openxmlformats.org/officeDocument/2006/extended-properties"
NS_CUSTOM = "http://schemas.openxmlformats.org/officeDocument/2006/custom-properties"
NS_VT = "http://schemas.openxmlformats.org/officeDocument/2006/docPropsVTypes"

NS_VML = "urn:schemas-microsoft-com:vml"
NS_VML_OFFICE = "urn:schemas-microsoft-com:office:office"
NS_VML_EXCEL = "urn:schemas-microsoft-com:office:excel"

NS_ENCRYPTION = "http://schemas.microsoft.com/office/2006/encryption"
NS_KEY_PASSWORD = "http://schemas.microsoft.com/office/2006/keyEncryptor/password"

# Prefix map for parsing with find()/findall()
NS = {
    "m": NS_MAIN,
    "r": NS_R,
    "pr": NS_PKG_REL,
    "ct": NS_CT,
    "xdr": NS_XDR,
    "a": NS_A,
    "c": NS_C,
    "cp": NS_CP,
    "dc": NS_DC,
    "dcterms": NS_DCTERMS,
    "ep": NS_EXTENDED,
    "op": NS_CUSTOM,
    "vt": NS_VT,
    "v": NS_VML,
    "o": NS_VML_OFFICE,
    "x": NS_VML_EXCEL,
}


def qn(prefix: str, local: str) -> str:
    """Clark-notation name: qn("m", "row") -> "{...spreadsheetml...}row"."""
    return f"{{{NS[prefix]}}}{local}"


# =============================================================================
# RELATIONSHIP TYPES
# =============================================================================

_DOC_REL = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"

REL_OFFICE_DOCUMENT = f"{_DOC_REL}/officeDocument"
REL_WORKSHEET = f"{_DOC_REL}/worksheet"
REL_STYLES = f"{_DOC_REL}/styles"
REL_SHARED_STRINGS = f"{_DOC_REL}/sharedStrings"
REL_THEME = f"{_DOC_REL}/theme"
REL_DRAWING = f"{_DOC_REL}/drawing"
REL_CHART = f"{_DOC_REL}/chart"
REL_IMAGE = f"{_DOC_REL}/image"
REL_TABLE = f"{_DOC_REL}/table"
REL_PIVOT_TABLE = f"{_DOC_REL}/pivotTable"
REL_PIVOT_CACHE_DEFINITION = f"{_DOC_REL}/pivotCacheDefinition"
REL_PIVOT_CACHE_RECORDS = f"{_DOC_REL}/pivotCacheRecords"
REL_COMMENTS = f"{_DOC_REL}/comments"
REL_VML_DRAWING = f"{_DOC_REL}/vmlDrawing"
REL_HYPERLINK = f"{_DOC_REL}/hyperlink"
REL_OLE_OBJECT = f"{_DOC_REL}/oleObject"
REL_PACKAGE = f"{_DOC_REL}/package"
REL_EXTENDED_PROPERTIES = f"{_DOC_REL}/extended-properties"
REL_CUSTOM_PROPERTIES = f"{_DOC_REL}/custom-properties"
REL_CALC_CHAIN = f"{_DOC_REL}/calcChain"
REL_CORE_PROPERTIES = "http://schemas.openxmlformats.org/package/2006/relationships/metadata/core-properties"

# Strict-conformance variants map onto the transitional ones
STRICT_REL_PREFIX = "http://purl.oclc.org/ooxml/officeDocument/relationships"


def normalize_rel_type(rel_type: str) -> str:
    if rel_type.startswith(STRICT_REL_PREFIX):
        return _DOC_REL + rel_type[len(STRICT_REL_PREFIX):]
    return rel_type


# =============================================================================
# CONTENT TYPES
# =============================================================================

_SML = "application/vnd.openxmlformats-officedocument.spreadsheetml"

CT_WORKBOOK = f"{_SML}.sheet.main+xml"
CT_WORKBOOK_MACRO = "application/vnd.ms-excel.sheet.macroEnabled.main+xml"
CT_WORKSHEET = f"{_SML}.worksheet+xml"
CT_STYLES = f"{_SML}.styles+xml"
CT_SHARED_STRINGS = f"{_SML}.sharedStrings+xml"
CT_TABLE = f"{_SML}.table+xml"
CT_PIVOT_TABLE = f"{_SML}.pivotTable+xml"
CT_PIVOT_CACHE_DEFINITION = f"{_SML}.pivotCacheDefinition+xml"
CT_COMMENTS = f"{_SML}.comments+xml"
CT_THEME = "application/vnd.openxmlformats-officedocument.theme+xml"
CT_DRAWING = "application/vnd.openxmlformats-officedocument.drawing+xml"
CT_CHART = "application/vnd.openxmlformats-officedocument.drawingml.chart+xml"
CT_VML = "application/vnd.openxmlformats-officedocument.vmlDrawing"
CT_OLE_OBJECT = "application/vnd.openxmlformats-officedocument.oleObject"
CT_CORE_PROPERTIES = "application/vnd.openxmlformats-package.core-properties+xml"
CT_EXTENDED_PROPERTIES = "application/vnd.openxmlformats-officedocument.extended-properties+xml"
CT_CUSTOM_PROPERTIES = "application/vnd.openxmlformats-officedocument.custom-properties+xml"
CT_RELATIONSHIPS = "application/vnd.openxmlformats-package.relationships+xml"
CT_XML = "application/xml"

WORKBOOK_CONTENT_TYPES = (CT_WORKBOOK, CT_WORKBOOK_MACRO, f"{_SML}.template.main+xml")
